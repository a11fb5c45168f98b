"""
Tick recorder for the MPC stack.
Records latency-compensated state, reference fit, actuation and predicted trajectory per tick.
"""

import h5py
import numpy as np
import threading
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import List, Optional
from datetime import datetime

logger = logging.getLogger(__name__)

STATE_DIM = 6
COEFF_DIM = 4

SOURCE_CODES = {"mpc": 0, "hold": 1, "neutral": 2}


@dataclass
class TickRecord:
    """One control tick."""

    timestamp: float
    state: Optional[np.ndarray]      # (6,) or None when no state was predicted
    coeffs: Optional[np.ndarray]     # (4,) or None when the reference was rejected
    steering_angle: float
    throttle: float
    source: str
    success: bool
    solve_time_s: float = 0.0
    iterations: int = 0
    cost: float = float("nan")
    mpc_x: List[float] = field(default_factory=list)
    mpc_y: List[float] = field(default_factory=list)


class TickRecorder:
    """Records MPC ticks to HDF5 format."""

    def __init__(self, output_dir: str, horizon: int, recording_name: Optional[str] = None,
                 flush_every: int = 30):
        """
        Initialize tick recorder.

        Args:
            output_dir: Directory to save recordings
            horizon: MPC horizon N (predicted trajectories hold N-1 points)
            recording_name: Name for this recording (default: timestamp)
            flush_every: Number of buffered ticks written per flush
        """
        self.output_dir = Path(output_dir)
        self.output_dir.mkdir(parents=True, exist_ok=True)

        if recording_name is None:
            recording_name = f"mpc_{datetime.now().strftime('%Y%m%d_%H%M%S')}"

        self.recording_name = recording_name
        self.output_file = self.output_dir / f"{recording_name}.h5"
        self.trajectory_len = max(horizon - 1, 1)
        self.flush_every = flush_every

        self.h5_file = h5py.File(self.output_file, 'w')
        self.h5_file.attrs["recording_start_time"] = datetime.now().isoformat()
        self.h5_file.attrs["recording_name"] = recording_name
        self.h5_file.attrs["horizon"] = horizon
        self._create_datasets()

        self.buffer: List[TickRecord] = []
        self.lock = threading.Lock()
        self.tick_count = 0

    def _create_datasets(self):
        """Create extensible datasets."""
        scalars = {
            "ticks/timestamps": np.float64,
            "ticks/steering_angle": np.float32,
            "ticks/throttle": np.float32,
            "ticks/source": np.int8,
            "ticks/success": np.bool_,
            "ticks/solve_time_s": np.float32,
            "ticks/iterations": np.int32,
            "ticks/cost": np.float64,
        }
        for name, dtype in scalars.items():
            self.h5_file.create_dataset(name, shape=(0,), maxshape=(None,), dtype=dtype)

        vectors = {
            "ticks/state": STATE_DIM,
            "ticks/coeffs": COEFF_DIM,
            "ticks/mpc_x": self.trajectory_len,
            "ticks/mpc_y": self.trajectory_len,
        }
        for name, dim in vectors.items():
            self.h5_file.create_dataset(
                name, shape=(0, dim), maxshape=(None, dim), dtype=np.float64,
                fillvalue=np.nan,
            )

    def record_tick(self, record: TickRecord):
        """Buffer a tick; flushes automatically every flush_every ticks."""
        with self.lock:
            self.buffer.append(record)
            pending = len(self.buffer)
        if pending >= self.flush_every:
            self.flush()

    @staticmethod
    def _padded(values, dim: int) -> np.ndarray:
        row = np.full(dim, np.nan)
        if values is not None:
            values = np.asarray(values, dtype=float).ravel()[:dim]
            row[:len(values)] = values
        return row

    def flush(self):
        """Write buffered ticks to disk."""
        with self.lock:
            records, self.buffer = self.buffer, []
            if records:
                self._write(records)

    def _write(self, records: List[TickRecord]):
        start = self.h5_file["ticks/timestamps"].shape[0]
        new_size = start + len(records)
        for name in self.h5_file["ticks"]:
            dataset = self.h5_file[f"ticks/{name}"]
            dataset.resize((new_size,) + dataset.shape[1:])

        ticks = self.h5_file["ticks"]
        ticks["timestamps"][start:] = [r.timestamp for r in records]
        ticks["steering_angle"][start:] = [r.steering_angle for r in records]
        ticks["throttle"][start:] = [r.throttle for r in records]
        ticks["source"][start:] = [SOURCE_CODES.get(r.source, -1) for r in records]
        ticks["success"][start:] = [r.success for r in records]
        ticks["solve_time_s"][start:] = [r.solve_time_s for r in records]
        ticks["iterations"][start:] = [r.iterations for r in records]
        ticks["cost"][start:] = [r.cost for r in records]
        ticks["state"][start:] = np.stack([self._padded(r.state, STATE_DIM) for r in records])
        ticks["coeffs"][start:] = np.stack([self._padded(r.coeffs, COEFF_DIM) for r in records])
        ticks["mpc_x"][start:] = np.stack(
            [self._padded(r.mpc_x, self.trajectory_len) for r in records])
        ticks["mpc_y"][start:] = np.stack(
            [self._padded(r.mpc_y, self.trajectory_len) for r in records])

        self.h5_file.flush()
        self.tick_count = new_size

    def close(self):
        """Flush remaining ticks and close the file."""
        self.flush()
        self.h5_file.attrs["recording_end_time"] = datetime.now().isoformat()
        self.h5_file.attrs["tick_count"] = self.tick_count
        self.h5_file.close()
        logger.info(f"Recorded {self.tick_count} ticks to {self.output_file}")
