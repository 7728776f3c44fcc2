"""
Tensor-bundle providers: where raw weights come from.

The parameter loader does not care how weights are stored on disk. It only
needs something that can answer "give me the tensor called X" with three
facts:

    shape:  dimension sizes, row-major
    dtype:  the declared element type, as a safetensors code ("F32", "BF16", ...)
    data:   the raw little-endian element bytes

That contract is the TensorBundle protocol. Two providers are included:

  - SafetensorsBundle: one or more .safetensors shards on disk (the format
    Hugging Face checkpoints ship in).
  - DictBundle: an in-memory mapping, handy for tests and for weights that
    already live in numpy/torch.
"""

import json
import os
from contextlib import ExitStack
from dataclasses import dataclass, field
from typing import Callable, Dict, Iterable, List, Mapping, Protocol, Tuple, Union, runtime_checkable

import numpy as np
import torch
from safetensors import safe_open


# safetensors dtype codes for the element types we can meet in a checkpoint.
TORCH_DTYPE_CODES = {
    torch.float64: "F64",
    torch.float32: "F32",
    torch.float16: "F16",
    torch.bfloat16: "BF16",
    torch.int64: "I64",
    torch.int32: "I32",
    torch.int16: "I16",
    torch.int8: "I8",
    torch.uint8: "U8",
    torch.bool: "BOOL",
}
# Newer element types only exist in recent torch releases.
for _attr, _code in (
    ("uint16", "U16"),
    ("uint32", "U32"),
    ("uint64", "U64"),
    ("float8_e4m3fn", "F8_E4M3"),
    ("float8_e5m2", "F8_E5M2"),
):
    if hasattr(torch, _attr):
        TORCH_DTYPE_CODES[getattr(torch, _attr)] = _code

NUMPY_DTYPE_CODES = {
    np.dtype(np.float64): "F64",
    np.dtype(np.float32): "F32",
    np.dtype(np.float16): "F16",
    np.dtype(np.int64): "I64",
    np.dtype(np.int32): "I32",
    np.dtype(np.int16): "I16",
    np.dtype(np.int8): "I8",
    np.dtype(np.uint64): "U64",
    np.dtype(np.uint32): "U32",
    np.dtype(np.uint16): "U16",
    np.dtype(np.uint8): "U8",
    np.dtype(np.bool_): "BOOL",
}

SAFETENSORS_FILE = "model.safetensors"
SAFETENSORS_INDEX = "model.safetensors.index.json"


@dataclass(frozen=True)
class TensorRecord:
    """
    One named tensor as stored in a bundle: shape, dtype code, raw bytes.

    `payload` is either the bytes themselves or a callable that reads them.
    Providers backed by files use the callable form, so shape and dtype can
    be inspected (and rejected) before any element data is read.
    """

    name: str
    shape: Tuple[int, ...]
    dtype: str
    payload: Union[bytes, Callable[[], bytes]] = field(repr=False)

    @property
    def data(self) -> bytes:
        if callable(self.payload):
            return self.payload()
        return self.payload


@runtime_checkable
class TensorBundle(Protocol):
    """Anything that can resolve a tensor name to a TensorRecord."""

    def lookup(self, name: str) -> TensorRecord:
        """
        Return the record for `name`.

        Raises:
            KeyError: The bundle has no tensor with that name.
        """
        ...

    def keys(self) -> List[str]:
        ...

    def __contains__(self, name: str) -> bool:
        ...


def _torch_bytes(tensor: torch.Tensor) -> bytes:
    tensor = tensor.detach().cpu().contiguous()
    # Reinterpreting as bytes works for every dtype, including bfloat16
    # and float8, which numpy cannot represent.
    return tensor.reshape(-1).view(torch.uint8).numpy().tobytes()


def _torch_record(name: str, tensor: torch.Tensor) -> TensorRecord:
    # Unknown element types keep torch's own name, e.g. "torch.complex64".
    code = TORCH_DTYPE_CODES.get(tensor.dtype, str(tensor.dtype))
    return TensorRecord(name, tuple(tensor.shape), code, _torch_bytes(tensor))


def _numpy_record(name: str, array: np.ndarray) -> TensorRecord:
    element = np.dtype(array.dtype.type)
    code = NUMPY_DTYPE_CODES.get(element, str(element))
    little = np.ascontiguousarray(array, dtype=array.dtype.newbyteorder("<"))
    return TensorRecord(name, tuple(array.shape), code, little.tobytes())


class DictBundle:
    """In-memory bundle over a {name: TensorRecord} mapping."""

    def __init__(self, records: Iterable[TensorRecord] = ()):
        self._records: Dict[str, TensorRecord] = {r.name: r for r in records}

    @classmethod
    def from_arrays(cls, arrays: Mapping[str, object]) -> "DictBundle":
        """Build a bundle from numpy arrays and/or torch tensors."""
        records = []
        for name, value in arrays.items():
            if isinstance(value, torch.Tensor):
                records.append(_torch_record(name, value))
            else:
                records.append(_numpy_record(name, np.asarray(value)))
        return cls(records)

    def add(self, record: TensorRecord) -> None:
        self._records[record.name] = record

    def remove(self, name: str) -> None:
        del self._records[name]

    def lookup(self, name: str) -> TensorRecord:
        if name not in self._records:
            raise KeyError(f"Tensor {name} not found in bundle")
        return self._records[name]

    def keys(self) -> List[str]:
        return list(self._records)

    def __contains__(self, name: str) -> bool:
        return name in self._records

    def __len__(self) -> int:
        return len(self._records)


class SafetensorsBundle:
    """
    Bundle backed by one or more .safetensors shards.

    safe_open memory-maps each file. Shape and dtype come from the file
    header; a tensor's bytes are only read when the record's data is
    accessed. Keys are assigned to the first shard that declares them.

    The mappings stay open until close() (or the end of a with block):

        with SafetensorsBundle.from_directory(model_dir) as bundle:
            store = load_parameters(bundle, config)
    """

    def __init__(self, paths):
        if isinstance(paths, (str, os.PathLike)):
            paths = [paths]
        self.paths = [os.fspath(p) for p in paths]
        self._stack = ExitStack()
        self._handles = {}
        self._key_to_shard: Dict[str, str] = {}

        try:
            for path in self.paths:
                if not os.path.exists(path):
                    raise FileNotFoundError(f"Safetensors file not found at {path}")
                handle = self._stack.enter_context(safe_open(path, framework="pt"))
                self._handles[path] = handle
                for key in handle.keys():
                    self._key_to_shard.setdefault(key, path)
        except BaseException:
            self._stack.close()
            raise

    @classmethod
    def from_directory(cls, directory: str) -> "SafetensorsBundle":
        """
        Open the weights of a Hugging Face style model directory.

        Looks for a single model.safetensors first, then for a sharded
        checkpoint described by model.safetensors.index.json.
        """
        single = os.path.join(directory, SAFETENSORS_FILE)
        if os.path.exists(single):
            return cls([single])

        index_path = os.path.join(directory, SAFETENSORS_INDEX)
        if not os.path.exists(index_path):
            raise FileNotFoundError(
                f"No {SAFETENSORS_FILE} or {SAFETENSORS_INDEX} in {directory}"
            )
        with open(index_path, "r") as f:
            weight_map = json.load(f)["weight_map"]
        shards = sorted(set(weight_map.values()))
        return cls([os.path.join(directory, shard) for shard in shards])

    @property
    def closed(self) -> bool:
        return not self._handles

    def _handle(self, name: str):
        if self.closed:
            raise ValueError("SafetensorsBundle is closed")
        if name not in self._key_to_shard:
            raise KeyError(f"Tensor {name} not found in any shard")
        return self._handles[self._key_to_shard[name]]

    def lookup(self, name: str) -> TensorRecord:
        header = self._handle(name).get_slice(name)
        return TensorRecord(
            name,
            tuple(header.get_shape()),
            header.get_dtype(),
            lambda: _torch_bytes(self._handle(name).get_tensor(name)),
        )

    def keys(self) -> List[str]:
        return list(self._key_to_shard)

    def __contains__(self, name: str) -> bool:
        return name in self._key_to_shard

    def __len__(self) -> int:
        return len(self._key_to_shard)

    def close(self) -> None:
        """Release every shard mapping. Safe to call more than once."""
        if self._handles:
            self._handles = {}
            self._stack.close()

    def __enter__(self):
        return self

    def __exit__(self, *args):
        self.close()
