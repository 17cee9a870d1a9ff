import logging
import warnings
from typing import List, Optional, Sequence

import numpy as np
from sklearn.exceptions import ConvergenceWarning
from sklearn.neural_network import MLPRegressor

logger = logging.getLogger(__name__)


def layer_sizes(input_dim: int) -> List[int]:
    return [
        input_dim,
        max(input_dim // 2, 2),
        max(input_dim // 3, 1),
        max(input_dim // 2, 2),
        input_dim,
    ]


class Autoencoder:
    """
    Encoder/bottleneck/decoder network: an MLPRegressor trained to map its
    input back onto itself. Inputs are expected in [0, 1] and
    reconstructions are clipped to that range.

    The regressor's random_state is the seed, so two instances built with
    the same seed and trained on the same matrix end up with identical
    weights.
    """

    def __init__(self, input_dim: int, seed: int = 42, learning_rate: float = 0.01):
        if input_dim < 1:
            raise ValueError("input_dim must be positive")
        self.input_dim = input_dim
        self.sizes = layer_sizes(input_dim)
        self.seed = seed
        self.learning_rate = learning_rate
        self.loss_history: List[float] = []
        self._model: Optional[MLPRegressor] = None

    @property
    def weights(self) -> List[np.ndarray]:
        return list(self._model.coefs_) if self._model is not None else []

    def _validate(self, data) -> np.ndarray:
        x = np.asarray(data, dtype=np.float64)
        if x.ndim != 2 or x.shape[1] != self.input_dim:
            raise ValueError(f"expected matrix with {self.input_dim} columns, got shape {x.shape}")
        if x.shape[0] == 0:
            raise ValueError("cannot train on an empty matrix")
        if not np.all(np.isfinite(x)):
            raise ValueError("training data contains non-finite values")
        return x

    def fit(self, data: np.ndarray, epochs: int = 50, batch_size: Optional[int] = None) -> List[float]:
        x = self._validate(data)
        n = x.shape[0]
        epochs = max(1, epochs)
        model = MLPRegressor(
            hidden_layer_sizes=tuple(self.sizes[1:-1]),
            activation="relu",
            solver="adam",
            learning_rate_init=self.learning_rate,
            batch_size=batch_size or min(32, max(1, n // 2)),
            max_iter=epochs,
            tol=0.0,
            n_iter_no_change=epochs + 1,
            shuffle=True,
            random_state=self.seed,
        )
        # a fixed epoch count is the point; stopping short is expected
        with warnings.catch_warnings():
            warnings.simplefilter("ignore", category=ConvergenceWarning)
            model.fit(x, x)
        self._model = model
        self.loss_history = [float(loss) for loss in model.loss_curve_]
        logger.debug(
            "autoencoder trained",
            extra={"samples": n, "epochs": epochs, "final_loss": self.loss_history[-1] if self.loss_history else None},
        )
        return self.loss_history

    def reconstruct(self, data: Sequence) -> np.ndarray:
        if self._model is None:
            raise RuntimeError("autoencoder has not been trained")
        x = np.asarray(data, dtype=np.float64)
        output = np.asarray(self._model.predict(x), dtype=np.float64).reshape(x.shape)
        return np.clip(output, 0.0, 1.0)

    def reconstruction_errors(self, data: Sequence) -> np.ndarray:
        x = np.asarray(data, dtype=np.float64)
        if x.shape[0] == 0:
            return np.zeros(0)
        return np.mean((x - self.reconstruct(x)) ** 2, axis=1)
