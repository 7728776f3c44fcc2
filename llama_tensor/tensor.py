"""
Tensor core: shaped views over a shared, reference-counted element buffer.

Every weight in the parameter store is a Tensor. A Tensor never owns its
elements directly. It holds a reference to a flat numpy buffer plus a small
view descriptor:

    buffer:  [ e0 e1 e2 e3 e4 e5 e6 e7 e8 e9 ... ]
                      ▲                 ▲
                      offset            offset + length
    shape:   (2, 3)   →  prod(shape) == length

Several Tensors can point at the same buffer at once (clone, slice). They are
independent VIEWS, not independent copies: reshape/slice/clone only touch the
descriptor and are O(1). transpose is the one operation that moves data; it
gathers the elements into a brand new row-major buffer.

Layout is always row-major (last axis varies fastest):

    shape (2, 3)  →  strides (3, 1)
    element [i, j] lives at flat index  offset + i*3 + j

MUTATION:
  Views share storage, so writing through one view is visible through every
  other view of the same buffer. Read access (data()) therefore always
  returns a read-only numpy array. Writing is only possible through
  mutable(), which first proves that this Tensor is the ONLY live view of its
  buffer (or detaches onto a private copy when copy_on_write=True).
"""

import math
import weakref
from contextlib import contextmanager
from typing import Iterator, Optional, Sequence, Tuple

import numpy as np
import torch

from llama_tensor.device import resolve_device


class TensorError(Exception):
    """Base class for tensor construction and view errors."""


class ShapeMismatch(TensorError):
    """Requested shape disagrees with the available element count."""


class BoundsError(TensorError):
    """A slice reaches outside the source view."""


class InvalidPermutation(TensorError):
    """transpose() was given something that is not a permutation of the axes."""


class AliasingError(TensorError):
    """Mutable access was requested on a buffer shared with another view."""


# ═══════════════════════════════════════════════════════════════════════════
# ROW-MAJOR STRIDE ARITHMETIC
# ═══════════════════════════════════════════════════════════════════════════

def compute_strides(shape: Sequence[int]) -> Tuple[int, ...]:
    """
    Row-major strides for a shape, measured in elements.

    The last axis has stride 1; every other axis has the stride of the next
    axis times the size of the next axis:

        (2, 3, 4)  →  (12, 4, 1)
    """
    strides = [0] * len(shape)
    stride = 1
    for i in reversed(range(len(shape))):
        strides[i] = stride
        stride *= shape[i]
    return tuple(strides)


def unravel_index(index: int, strides: Sequence[int]) -> Tuple[int, ...]:
    """Decompose a flat index into a multi-index by successive division."""
    multi = []
    remainder = index
    for stride in strides:
        multi.append(remainder // stride)
        remainder %= stride
    return tuple(multi)


def ravel_index(multi: Sequence[int], strides: Sequence[int]) -> int:
    """Recompose a multi-index into a flat index."""
    return sum(i * s for i, s in zip(multi, strides))


def _normalize_shape(shape: Sequence[int]) -> Tuple[int, ...]:
    shape = tuple(int(d) for d in shape)
    if any(d <= 0 for d in shape):
        raise ShapeMismatch(f"Shape {list(shape)} has a non-positive dimension")
    return shape


class _Storage:
    """
    The shared backing buffer.

    Python's reference counting gives us the lifetime rule for free: the
    numpy array is released when the last Tensor referencing this object is
    garbage collected. The weak set tracks which Tensors are still alive so
    that mutable() can check for exclusivity.
    """

    def __init__(self, array: np.ndarray):
        self.array = array
        self.views = weakref.WeakSet()
        self.borrowed = False


# ═══════════════════════════════════════════════════════════════════════════
# TENSOR
# ═══════════════════════════════════════════════════════════════════════════

class Tensor:
    """
    A shaped, row-major view over a shared flat buffer.

    Usage:
        t = Tensor([1, 2, 3, 4, 5, 6], (2, 3))
        t.slice(3, (3,)).data()      # array([4., 5., 6.]), shares t's buffer
        t.transpose((1, 0)).data()   # array([1., 4., 2., 5., 3., 6.]), new buffer
    """

    def __init__(
        self,
        data,
        shape: Sequence[int],
        dtype: Optional[np.dtype] = None,
    ):
        """
        Copy `data` into a freshly owned buffer and view it as `shape`.

        Args:
            data: Any array-like of elements (flattened in row-major order).
            shape: Dimension sizes; their product must equal the element count.
            dtype: Element type. Defaults to float32 for Python scalars,
                   otherwise the dtype of `data` is kept.

        Raises:
            ShapeMismatch: prod(shape) != number of elements in `data`.
        """
        if dtype is None and not isinstance(data, np.ndarray):
            dtype = np.float32
        array = np.array(data, dtype=dtype).reshape(-1)
        shape = _normalize_shape(shape)
        if math.prod(shape) != array.shape[0]:
            raise ShapeMismatch(
                f"Shape {list(shape)} needs {math.prod(shape)} elements, "
                f"but data has {array.shape[0]}"
            )
        self._attach(_Storage(array), shape, 0, array.shape[0])

    def _attach(self, storage: _Storage, shape, offset: int, length: int) -> None:
        self._storage = storage
        self._shape = tuple(shape)
        self._offset = offset
        self._length = length
        storage.views.add(self)

    @classmethod
    def _view(cls, storage: _Storage, shape, offset: int, length: int) -> "Tensor":
        tensor = cls.__new__(cls)
        tensor._attach(storage, shape, offset, length)
        return tensor

    # ── Construction ─────────────────────────────────────────────────────

    @classmethod
    def zeros(cls, shape: Sequence[int], dtype=np.float32) -> "Tensor":
        """Allocate a zero-filled buffer of prod(shape) elements."""
        shape = _normalize_shape(shape)
        array = np.zeros(math.prod(shape), dtype=dtype)
        return cls._view(_Storage(array), shape, 0, array.shape[0])

    @classmethod
    def from_bytes(cls, raw: bytes, shape: Sequence[int], dtype="<f4") -> "Tensor":
        """
        Decode a row-major byte payload (little-endian float32 by default).

        The decoded buffer is an owned copy in native byte order.

        Raises:
            ShapeMismatch: The payload is not a whole number of elements, or
                           its element count disagrees with `shape`.
        """
        encoding = np.dtype(dtype)
        if len(raw) % encoding.itemsize != 0:
            raise ShapeMismatch(
                f"Payload of {len(raw)} bytes is not a multiple of the "
                f"{encoding.itemsize}-byte element size"
            )
        shape = _normalize_shape(shape)
        count = len(raw) // encoding.itemsize
        if math.prod(shape) != count:
            raise ShapeMismatch(
                f"Shape {list(shape)} needs {math.prod(shape)} elements, "
                f"but payload encodes {count}"
            )
        array = np.frombuffer(raw, dtype=encoding).astype(encoding.newbyteorder("="))
        return cls._view(_Storage(array), shape, 0, count)

    @classmethod
    def from_torch(cls, tensor: torch.Tensor) -> "Tensor":
        """Copy a torch tensor (any device) into a new Tensor."""
        array = tensor.detach().cpu().contiguous().numpy()
        return cls(array, tuple(tensor.shape), dtype=array.dtype)

    # ── Accessors ────────────────────────────────────────────────────────

    def data(self) -> np.ndarray:
        """Read-only flat view of the visible elements [offset, offset+length)."""
        view = self._storage.array[self._offset:self._offset + self._length]
        view.flags.writeable = False
        return view

    def numpy(self) -> np.ndarray:
        """Read-only view of the visible elements with this tensor's shape."""
        return self.data().reshape(self._shape)

    @property
    def shape(self) -> Tuple[int, ...]:
        return self._shape

    @property
    def size(self) -> int:
        return self._length

    @property
    def offset(self) -> int:
        return self._offset

    @property
    def length(self) -> int:
        return self._length

    @property
    def ndim(self) -> int:
        return len(self._shape)

    @property
    def dtype(self) -> np.dtype:
        return self._storage.array.dtype

    @property
    def strides(self) -> Tuple[int, ...]:
        return compute_strides(self._shape)

    def shares_storage(self, other: "Tensor") -> bool:
        return self._storage is other._storage

    def is_unique(self) -> bool:
        """True when no other live Tensor views this buffer."""
        return len(self._storage.views) == 1

    # ── Views ────────────────────────────────────────────────────────────

    def clone(self) -> "Tensor":
        """
        A new view of the same buffer, offset, length and shape.

        This is an aliasing operation, not a deep copy. Use transpose() with
        the identity permutation or make_unique() when a private copy is
        needed.
        """
        self._check_not_borrowed()
        return Tensor._view(self._storage, self._shape, self._offset, self._length)

    def reshape(self, new_shape: Sequence[int]) -> "Tensor":
        """
        Reinterpret the same elements under a new shape, in place.

        Only the shape descriptor changes. Returns self for chaining.

        Raises:
            ShapeMismatch: prod(new_shape) != size. The tensor is unchanged.
        """
        new_shape = _normalize_shape(new_shape)
        if math.prod(new_shape) != self._length:
            raise ShapeMismatch(
                f"New shape {list(new_shape)} does not match tensor of "
                f"shape {list(self._shape)}"
            )
        self._shape = new_shape
        return self

    def slice(self, start: int, shape: Sequence[int]) -> "Tensor":
        """
        A view of prod(shape) consecutive elements starting at `start`.

        `start` is relative to this view, so slicing a slice works as
        expected. The result shares this tensor's buffer.

        Raises:
            BoundsError: The requested range leaves this view.
        """
        self._check_not_borrowed()
        shape = _normalize_shape(shape)
        new_length = math.prod(shape)
        if start < 0 or start + new_length > self._length:
            raise BoundsError(
                f"Slice [{start}, {start + new_length}) is out of bounds for "
                f"tensor of shape {list(self._shape)} ({self._length} elements)"
            )
        return Tensor._view(self._storage, shape, self._offset + start, new_length)

    # ── Transpose ────────────────────────────────────────────────────────

    def transpose(self, perm: Sequence[int]) -> "Tensor":
        """
        Permute the axes, physically reordering the data into a new buffer.

        Axis i of the result is axis perm[i] of the source:

            shape (2, 3), perm (1, 0)
            [[1, 2, 3],        [[1, 4],
             [4, 5, 6]]   →     [2, 5],
                                [3, 6]]

        In stride terms: each source flat index k is decomposed into a
        multi-index with the source strides, the multi-index is permuted,
        and recomposed with the destination strides. numpy's strided copy
        performs exactly this gather in one pass.

        This is numpy's convention. Reading perm the other way round (source
        axis j moves to result axis perm[j]) applies the inverse permutation.
        The two readings agree only when perm is its own inverse, which holds
        for every 2-D transpose but not for e.g. (1, 2, 0).

        The result never aliases the source.

        Raises:
            InvalidPermutation: perm is not a permutation of range(ndim).
        """
        perm = tuple(int(p) for p in perm)
        if sorted(perm) != list(range(self.ndim)):
            raise InvalidPermutation(
                f"{list(perm)} is not a permutation of the {self.ndim} axes "
                f"of shape {list(self._shape)}"
            )
        new_shape = tuple(self._shape[p] for p in perm)
        source = self.data().reshape(self._shape)
        reordered = np.ascontiguousarray(source.transpose(perm)).reshape(-1)
        return Tensor._view(_Storage(reordered), new_shape, 0, self._length)

    # ── Mutation ─────────────────────────────────────────────────────────

    def make_unique(self) -> "Tensor":
        """
        Detach onto a private copy of the visible elements if shared.

        Other views keep the old buffer and never see later writes made
        through this tensor. Returns self.
        """
        if not self.is_unique():
            array = self._storage.array[self._offset:self._offset + self._length].copy()
            self._storage.views.discard(self)
            self._attach(_Storage(array), self._shape, 0, self._length)
        return self

    @contextmanager
    def mutable(self, copy_on_write: bool = False) -> Iterator[np.ndarray]:
        """
        Borrow a writable flat view of this tensor's elements.

        Usage:
            with weight.mutable() as w:
                w *= 2.0

        The borrow is exclusive: this tensor must be the only live view of
        its buffer. While the block runs, clone() and slice() on it raise
        AliasingError. On exit the yielded array is switched to read-only.

        Only the yielded array itself is locked on exit. Arrays derived from it
        inside the block (w[1:], w.reshape(...)) keep their own writeable flag
        and can still change the buffer afterwards, so do not let them escape.
        Read-only arrays returned earlier by data() or numpy() are not counted
        as views: they see every write made during the borrow.

        Args:
            copy_on_write: Instead of failing on a shared buffer, detach onto
                           a private copy first (see make_unique()).

        Raises:
            AliasingError: The buffer is shared (and copy_on_write is False)
                           or already borrowed.
        """
        if self._storage.borrowed:
            raise AliasingError("Tensor buffer is already mutably borrowed")
        if not self.is_unique():
            if not copy_on_write:
                raise AliasingError(
                    f"Tensor buffer is shared by {len(self._storage.views)} "
                    f"views; mutable access requires exclusive ownership"
                )
            self.make_unique()

        view = self._storage.array[self._offset:self._offset + self._length]
        self._storage.borrowed = True
        try:
            yield view
        finally:
            view.flags.writeable = False
            self._storage.borrowed = False

    def _check_not_borrowed(self) -> None:
        if self._storage.borrowed:
            raise AliasingError("Cannot create a view while the buffer is mutably borrowed")

    # ── Interop and debugging ────────────────────────────────────────────

    def to_torch(self, device=None) -> torch.Tensor:
        """Copy into a torch tensor of the same shape (never aliases)."""
        out = torch.from_numpy(np.array(self.data())).reshape(self._shape)
        return out.to(resolve_device(device))

    def equal(self, other: "Tensor") -> bool:
        return self._shape == other._shape and np.array_equal(self.data(), other.data())

    def close_to(self, other: "Tensor", rel: float) -> bool:
        """
        Element-wise relative equality: |x - y| <= rel * (|x| + |y|) / 2.

        Tensors with different shapes are never close.
        """
        if self._shape != other._shape:
            return False
        a = self.data().astype(np.float64)
        b = other.data().astype(np.float64)
        return bool(np.all(np.abs(a - b) <= rel * (np.abs(a) + np.abs(b)) / 2.0))

    def describe(self) -> str:
        """Print shape/offset/length followed by one line per last-axis row."""
        lines = [f"shape: {list(self._shape)}, offset: {self._offset}, length: {self._length}"]
        dim = self._shape[-1] if self._shape else 1
        data = self.data()
        for start in range(0, self._length, dim):
            lines.append(str(data[start:start + dim].tolist()))
        text = "\n".join(lines)
        print(text)
        return text

    def __repr__(self) -> str:
        return (
            f"Tensor(shape={self._shape}, dtype={self.dtype}, "
            f"offset={self._offset}, length={self._length})"
        )
