"""
Utility functions for loading and inspecting model weights.

Cross-cutting concerns that don't belong in the tensor core or the loader:
timing, load logging, and parameter diagnostics. Deliberately simple, with
no logging framework; messages go to the console and optionally to a file.
"""

import os
import time
from datetime import datetime
from typing import Optional, Sequence


# ═══════════════════════════════════════════════════════════════════════════
# TIMING
# ═══════════════════════════════════════════════════════════════════════════

class Timer:
    """
    Simple context manager for timing code blocks.

    Usage:
        with Timer("Load weights") as t:
            store = load_parameters(bundle, config)
        print(t)  # "Load weights: 0.0234s"
    """

    def __init__(self, name: str = "Block"):
        self.name = name
        self.elapsed: float = 0.0

    def __enter__(self):
        self.start = time.perf_counter()
        return self

    def __exit__(self, *args):
        self.elapsed = time.perf_counter() - self.start

    def __str__(self):
        return f"{self.name}: {self.elapsed:.4f}s"


# ═══════════════════════════════════════════════════════════════════════════
# LOAD LOGGER
# ═══════════════════════════════════════════════════════════════════════════

class LoadLogger:
    """
    Lightweight logger for weight loading, to console and optional log file.

    With verbose=False only summary lines are written; per-tensor lines are
    dropped. The log file receives exactly what the console receives.
    """

    def __init__(self, log_dir: Optional[str] = None, verbose: bool = True):
        """
        Args:
            log_dir: Directory for log files. If None, only console output.
            verbose: Whether to log one line per loaded tensor.
        """
        self.verbose = verbose
        self.log_file = None
        self.log_path = None
        if log_dir:
            os.makedirs(log_dir, exist_ok=True)
            timestamp = datetime.now().strftime("%Y%m%d_%H%M%S")
            self.log_path = os.path.join(log_dir, f"load_{timestamp}.log")
            self.log_file = open(self.log_path, "w")
            print(f"Logging to: {self.log_path}")

    def _write(self, msg: str) -> None:
        """Write message to console and optionally to log file."""
        print(msg)
        if self.log_file:
            self.log_file.write(msg + "\n")
            self.log_file.flush()  # Keep the log complete if loading aborts

    def log_tensor(self, name: str, shape: Sequence[int], dtype: str) -> None:
        """
        Log one loaded tensor.

        Example output:
          model.layers.0.self_attn.q_proj.weight      [128, 128]    F32
        """
        if self.verbose:
            self._write(f"  {name:<48} {str(list(shape)):<16} {dtype}")

    def log_info(self, msg: str) -> None:
        """Log an informational message."""
        self._write(f"[INFO] {msg}")

    def log_error(self, msg: str) -> None:
        """Log the reason a load was aborted."""
        self._write(f"[ERROR] {msg}")

    def close(self) -> None:
        """Close the log file if open."""
        if self.log_file:
            self.log_file.close()
            self.log_file = None


# ═══════════════════════════════════════════════════════════════════════════
# PARAMETER DIAGNOSTICS
# ═══════════════════════════════════════════════════════════════════════════

def count_parameters(store) -> int:
    """
    Count the elements of all weights in a ParameterStore.

    Tensors that share storage (tied embeddings) are counted once, so for a
    tied model the result is smaller than the plain sum over all tensors.
    """
    seen = []
    total = 0
    for _, tensor in store.named_tensors():
        if any(tensor.shares_storage(other) for other in seen):
            continue
        seen.append(tensor)
        total += tensor.size
    return total


def print_store_summary(store) -> str:
    """
    Print a breakdown of weight elements by tensor.

    Example output:
      =================================================================
      Parameter Store Summary
      =================================================================
      Name                                     Params       %
      -----------------------------------------------------------------
        lm_head                                    262,144 (21.6%)
        layers.0.wq                                 16,384 ( 1.4%)
      ...

    Returns:
        The summary as a string (also printed to stdout).
    """
    lines = []
    named = list(store.named_tensors())
    grand_total = sum(t.size for _, t in named)

    lines.append("=" * 65)
    lines.append("Parameter Store Summary")
    lines.append("=" * 65)
    lines.append(f"{'Name':<40} {'Params':>12} {'%':>7}")
    lines.append("-" * 65)

    for name, tensor in named:
        n = tensor.size
        pct = 100.0 * n / grand_total if grand_total > 0 else 0
        lines.append(f"  {name:<38} {n:>12,d} ({pct:>5.1f}%)")

    unique = count_parameters(store)
    lines.append("-" * 65)
    lines.append(f"  {'TOTAL (all views)':<38} {grand_total:>12,d}")
    lines.append(f"  {'TOTAL (unique storage)':<38} {unique:>12,d}")

    # Each fp32 element = 4 bytes, fp16/bf16 = 2 bytes
    fp32_mb = unique * 4 / 1024**2
    fp16_mb = unique * 2 / 1024**2
    lines.append(f"  {'Memory (fp32)':<38} {fp32_mb:>10.1f} MB")
    lines.append(f"  {'Memory (fp16/bf16)':<38} {fp16_mb:>10.1f} MB")
    lines.append("=" * 65)

    summary = "\n".join(lines)
    print(summary)
    return summary
