"""
llama-tensor: tensor views and weight loading for LLaMA-style inference.

This package provides the storage layer under a transformer inference stack:
how raw weight data is held, addressed, reshaped and reordered before any
forward-pass math touches it.

Key modules:
  - tensor:  Tensor views over shared buffers (reshape, slice, transpose)
  - bundle:  Tensor-bundle providers (safetensors shards, in-memory dicts)
  - config:  LLaMA model configuration (config.json)
  - params:  ParameterStore and the all-or-nothing weight loader
  - device:  torch device selection for exporting weights
  - utils:   Timing, load logging, parameter diagnostics
"""

__version__ = "0.1.0"
