"""Small MLP mapping gaze features to screen coordinates, trained in the background."""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from typing import Callable, Optional, Tuple

import numpy as np
import torch
import torch.nn as nn

from pogtrack.features import FeatureScales, GazeFeatures

logger = logging.getLogger(__name__)


@dataclass
class NetworkConfig:
    """Architecture and training schedule."""

    in_dim: int = 8
    hidden: Tuple[int, int] = (64, 32)
    epochs: int = 50
    batch_size: int = 32
    learning_rate: float = 1e-3
    validation_split: float = 0.1
    seed: int = 0
    device: str = "cpu"


@dataclass
class TrainingProgress:
    """Per-epoch loss report."""

    epoch: int
    epochs: int
    loss: float
    val_loss: Optional[float]


class GazeNet(nn.Module):
    """in_dim -> hidden[0] -> hidden[1] -> 2 with ReLU activations."""

    def __init__(self, in_dim: int = 8, hidden: Tuple[int, int] = (64, 32)) -> None:
        """Two hidden ReLU layers and a linear (u, v) head."""
        super().__init__()
        self.layers = nn.Sequential(
            nn.Linear(in_dim, hidden[0]),
            nn.ReLU(),
            nn.Linear(hidden[0], hidden[1]),
            nn.ReLU(),
            nn.Linear(hidden[1], 2),
        )

    def forward(self, x: torch.Tensor) -> torch.Tensor:
        """Map a batch of feature vectors to screen coordinates."""
        return self.layers(x)


class NetworkModel:
    """Trained network exposing the common predict interface."""

    kind = "network"

    def __init__(self, net: GazeNet, scales: FeatureScales, config: NetworkConfig) -> None:
        """Wrap a trained net with the scales it was trained on."""
        self.net = net
        self.scales = scales
        self.config = config
        self.device = torch.device(config.device)
        self.net.eval()

    @property
    def layers(self) -> str:
        """Layer widths for the weights readout."""
        return f"{self.config.in_dim}->{self.config.hidden[0]}->{self.config.hidden[1]}->2"

    def predict(self, features: GazeFeatures) -> Tuple[float, float]:
        """Evaluate the network on one feature vector."""
        vec = features.vector(self.scales)
        x = torch.tensor(vec, dtype=torch.float32, device=self.device).unsqueeze(0)
        with torch.no_grad():
            out = self.net(x)[0].cpu().numpy()
        return float(out[0]), float(out[1])


def train_network(
    X: np.ndarray,
    Y: np.ndarray,
    config: NetworkConfig,
    scales: FeatureScales,
    progress: Optional[Callable[[TrainingProgress], None]] = None,
    stop_event: Optional[threading.Event] = None,
) -> Optional[NetworkModel]:
    """Mini-batch Adam on MSE with a held-out validation split. Returns None if stopped."""
    device = torch.device(config.device)
    generator = torch.Generator().manual_seed(config.seed)
    torch.manual_seed(config.seed)

    x_all = torch.tensor(np.asarray(X, dtype=np.float32))
    y_all = torch.tensor(np.asarray(Y, dtype=np.float32))
    n = x_all.shape[0]

    n_val = int(n * config.validation_split)
    if config.validation_split > 0.0 and n >= 10:
        n_val = max(1, n_val)
    # Held-out rows are the tail of the collected sequence, as recorded.
    x_train, y_train = x_all[: n - n_val].to(device), y_all[: n - n_val].to(device)
    x_val, y_val = x_all[n - n_val :].to(device), y_all[n - n_val :].to(device)

    net = GazeNet(config.in_dim, config.hidden).to(device)
    optimizer = torch.optim.Adam(net.parameters(), lr=config.learning_rate)
    criterion = nn.MSELoss()

    n_train = x_train.shape[0]
    for epoch in range(config.epochs):
        net.train()
        perm = torch.randperm(n_train, generator=generator).to(device)
        running = 0.0
        for start in range(0, n_train, config.batch_size):
            if stop_event is not None and stop_event.is_set():
                logger.info("Network training cancelled at epoch %d", epoch + 1)
                return None
            idx = perm[start : start + config.batch_size]
            optimizer.zero_grad()
            loss = criterion(net(x_train[idx]), y_train[idx])
            loss.backward()
            optimizer.step()
            running += float(loss.item()) * idx.shape[0]

        train_loss = running / max(1, n_train)
        val_loss = None
        if n_val > 0:
            net.eval()
            with torch.no_grad():
                val_loss = float(criterion(net(x_val), y_val).item())

        if epoch % 10 == 0:
            logger.info(
                "Epoch %d: loss=%.4f, val_loss=%s",
                epoch,
                train_loss,
                f"{val_loss:.4f}" if val_loss is not None else "n/a",
            )
        if progress is not None:
            progress(TrainingProgress(epoch=epoch + 1, epochs=config.epochs, loss=train_loss, val_loss=val_loss))

    net.eval()
    return NetworkModel(net=net, scales=scales, config=config)


class NetworkTrainer:
    """Runs train_network on a worker thread; results are collected with poll()."""

    def __init__(self, config: NetworkConfig, scales: FeatureScales) -> None:
        """Prepare a trainer; nothing runs until start."""
        self.config = config
        self.scales = scales
        self.stop_flag = threading.Event()
        self._lock = threading.Lock()
        self._thread: Optional[threading.Thread] = None
        self._progress: Optional[TrainingProgress] = None
        self._result: Optional[NetworkModel] = None
        self._error: Optional[BaseException] = None
        self._finished = False

    def start(self, X: np.ndarray, Y: np.ndarray) -> None:
        """Launch training on a daemon thread."""
        if self._thread is not None:
            raise RuntimeError("trainer already started")
        logger.info("Training on %d samples...", len(X))
        self._thread = threading.Thread(target=self._run, args=(X, Y), daemon=True)
        self._thread.start()

    def _run(self, X: np.ndarray, Y: np.ndarray) -> None:
        """Thread body: train and store the model or the error."""
        try:
            model = train_network(X, Y, self.config, self.scales, self._on_progress, self.stop_flag)
        except Exception as exc:
            logger.exception("Network training failed")
            with self._lock:
                self._error = exc
                self._finished = True
            return
        with self._lock:
            self._result = model
            self._finished = True

    def _on_progress(self, progress: TrainingProgress) -> None:
        """Keep the latest epoch report."""
        with self._lock:
            self._progress = progress

    def cancel(self) -> None:
        """Ask the worker to stop at the next batch."""
        self.stop_flag.set()

    @property
    def cancelled(self) -> bool:
        """True once cancel has been requested."""
        return self.stop_flag.is_set()

    @property
    def progress(self) -> Optional[TrainingProgress]:
        """Latest epoch report from the worker."""
        with self._lock:
            return self._progress

    @property
    def finished(self) -> bool:
        """True once the worker has exited."""
        with self._lock:
            return self._finished

    @property
    def error(self) -> Optional[BaseException]:
        """Exception raised by the worker, if any."""
        with self._lock:
            return self._error

    def result(self) -> Optional[NetworkModel]:
        """Trained model once finished; None while running, on error, or if cancelled."""
        with self._lock:
            if not self._finished or self.stop_flag.is_set():
                return None
            return self._result

    def wait(self, timeout: Optional[float] = None) -> bool:
        """Join the worker; True once it has exited."""
        if self._thread is None:
            return True
        self._thread.join(timeout)
        return not self._thread.is_alive()
