"""
Device selection for handing weights over to torch.

Tensors in this package always live in host memory (numpy buffers). Only
when a consumer asks for torch tensors (Tensor.to_torch,
ParameterStore.to_state_dict) do we need to pick a device, and that choice is
made here so the rest of the code stays device-agnostic.

SUPPORTED DEVICES:
  1. CUDA (NVIDIA GPUs)
  2. MPS (Apple Silicon)
  3. CPU: always available, the default when nothing else is found
"""

from typing import Optional, Union

import torch


def get_device() -> torch.device:
    """
    Auto-detect the best available compute device.

    Priority order: CUDA → MPS → CPU

    Returns:
        torch.device: The selected device.
    """
    if torch.cuda.is_available():
        return torch.device("cuda")
    elif hasattr(torch.backends, "mps") and torch.backends.mps.is_available():
        return torch.device("mps")
    else:
        return torch.device("cpu")


def resolve_device(device: Optional[Union[str, torch.device]] = None) -> torch.device:
    """
    Turn a user-facing device argument into a torch.device.

    Args:
        device: None (CPU), "auto" (see get_device), a device string such as
                "cuda:0", or a torch.device which is returned unchanged.
    """
    if device is None:
        return torch.device("cpu")
    if isinstance(device, torch.device):
        return device
    if device == "auto":
        return get_device()
    return torch.device(device)
