"""
Parameter store: every weight of one LLaMA model, loaded from a tensor bundle.

LAYOUT (one entry per decoder layer in each per-layer list):

    embedding_table        (vocab_size, hidden_size)
    per layer i in range(num_layers):
      attn_norm_w[i]       model.layers.{i}.input_layernorm.weight
      wq[i] wk[i] wv[i]    model.layers.{i}.self_attn.{q,k,v}_proj.weight
      wo[i]                model.layers.{i}.self_attn.o_proj.weight
      ffn_norm_w[i]        model.layers.{i}.post_attention_layernorm.weight
      w_up[i] w_gate[i]    model.layers.{i}.mlp.{up,gate}_proj.weight
      w_down[i]            model.layers.{i}.mlp.down_proj.weight
    output_norm_w          model.norm.weight
    lm_head                lm_head.weight

LOADING IS ALL-OR-NOTHING:
  Tensors are read one at a time, in the order above. The first missing
  name, wrong dtype, or malformed payload aborts the whole load with an error
  naming the offending tensor; no partially filled store is ever returned.
  None of these failures is transient, so nothing is retried.

TIED EMBEDDINGS:
  With tie_word_embeddings=True the checkpoint holds one (vocab, hidden)
  matrix under "lm_head.weight". It is read once, and embedding_table is a
  clone() of lm_head, a second view of the same buffer.
"""

from dataclasses import dataclass
from typing import Dict, Iterator, List, Optional, Tuple

import torch

from llama_tensor.bundle import SafetensorsBundle, TensorBundle
from llama_tensor.config import ModelConfig
from llama_tensor.device import resolve_device
from llama_tensor.tensor import ShapeMismatch, Tensor
from llama_tensor.utils import LoadLogger, Timer, count_parameters


EXPECTED_DTYPE = "F32"

EMBED_TOKENS = "model.embed_tokens.weight"
LM_HEAD = "lm_head.weight"
OUTPUT_NORM = "model.norm.weight"

# (ParameterStore field, key suffix under "model.layers.{i}.")
LAYER_WEIGHTS = (
    ("attn_norm_w", "input_layernorm.weight"),
    ("wq", "self_attn.q_proj.weight"),
    ("wk", "self_attn.k_proj.weight"),
    ("wv", "self_attn.v_proj.weight"),
    ("wo", "self_attn.o_proj.weight"),
    ("ffn_norm_w", "post_attention_layernorm.weight"),
    ("w_up", "mlp.up_proj.weight"),
    ("w_gate", "mlp.gate_proj.weight"),
    ("w_down", "mlp.down_proj.weight"),
)


class WeightLoadError(Exception):
    """Base class for fatal weight-loading errors."""


class MissingTensor(WeightLoadError):
    def __init__(self, name: str):
        self.name = name
        super().__init__(f"Tensor {name} not found in bundle")


class DtypeMismatch(WeightLoadError):
    def __init__(self, name: str, expected: str, found: str):
        self.name = name
        self.expected = expected
        self.found = found
        super().__init__(
            f"Expected tensor {name} to have dtype {expected}, but found {found}"
        )


class UnexpectedShape(WeightLoadError):
    """The bundle's shape for a tensor disagrees with the model configuration."""

    def __init__(self, name: str, expected: Tuple[int, ...], found: Tuple[int, ...]):
        self.name = name
        self.expected = tuple(expected)
        self.found = tuple(found)
        super().__init__(
            f"Tensor {name} has shape {list(found)}, but the configuration "
            f"implies {list(expected)}"
        )


def layer_key(layer: int, suffix: str) -> str:
    return f"model.layers.{layer}.{suffix}"


def embedding_key(config: ModelConfig) -> str:
    return LM_HEAD if config.tie_word_embeddings else EMBED_TOKENS


def weight_names(config: ModelConfig) -> List[str]:
    """Every key the loader requests, in load order."""
    names = [embedding_key(config)]
    for layer in range(config.num_layers):
        names.extend(layer_key(layer, suffix) for _, suffix in LAYER_WEIGHTS)
    names.append(OUTPUT_NORM)
    if not config.tie_word_embeddings:
        names.append(LM_HEAD)
    return names


def expected_shapes(config: ModelConfig) -> Dict[str, Tuple[int, ...]]:
    """Shape implied by the configuration for every key in weight_names()."""
    h = config.hidden_size
    i = config.intermediate_size
    q = config.num_heads * config.head_dim
    kv = config.num_kv_heads * config.head_dim
    per_layer = {
        "input_layernorm.weight": (h,),
        "self_attn.q_proj.weight": (q, h),
        "self_attn.k_proj.weight": (kv, h),
        "self_attn.v_proj.weight": (kv, h),
        "self_attn.o_proj.weight": (h, q),
        "post_attention_layernorm.weight": (h,),
        "mlp.up_proj.weight": (i, h),
        "mlp.gate_proj.weight": (i, h),
        "mlp.down_proj.weight": (h, i),
    }

    shapes = {
        EMBED_TOKENS: (config.vocab_size, h),
        LM_HEAD: (config.vocab_size, h),
        OUTPUT_NORM: (h,),
    }
    for layer in range(config.num_layers):
        for suffix, shape in per_layer.items():
            shapes[layer_key(layer, suffix)] = shape
    return {name: shapes[name] for name in weight_names(config)}


@dataclass
class ParameterStore:
    """All weights of one LLaMA model. Read-only after loading."""

    # token_id -> embedding lookup table, (vocab_size, hidden_size)
    embedding_table: Tensor
    # decoder layers
    attn_norm_w: List[Tensor]  # (hidden_size,) x layers
    wq: List[Tensor]           # (n_heads * head_dim, hidden_size) x layers
    wk: List[Tensor]           # (n_kv_heads * head_dim, hidden_size) x layers
    wv: List[Tensor]           # (n_kv_heads * head_dim, hidden_size) x layers
    wo: List[Tensor]           # (hidden_size, n_heads * head_dim) x layers
    # feed-forward
    ffn_norm_w: List[Tensor]   # (hidden_size,) x layers
    w_up: List[Tensor]         # (intermediate_size, hidden_size) x layers
    w_gate: List[Tensor]       # (intermediate_size, hidden_size) x layers
    w_down: List[Tensor]       # (hidden_size, intermediate_size) x layers
    # output
    output_norm_w: Tensor      # (hidden_size,)
    lm_head: Tensor            # (vocab_size, hidden_size)

    def __post_init__(self):
        counts = {field: len(getattr(self, field)) for field, _ in LAYER_WEIGHTS}
        if len(set(counts.values())) != 1:
            raise ValueError(f"Per-layer weight lists differ in length: {counts}")

    @property
    def num_layers(self) -> int:
        return len(self.wq)

    @classmethod
    def from_bundle(
        cls,
        bundle: TensorBundle,
        config: ModelConfig,
        logger: Optional[LoadLogger] = None,
        check_shapes: bool = True,
    ) -> "ParameterStore":
        return load_parameters(bundle, config, logger=logger, check_shapes=check_shapes)

    @classmethod
    def from_pretrained(
        cls,
        model_dir: str,
        logger: Optional[LoadLogger] = None,
        check_shapes: bool = True,
    ) -> "ParameterStore":
        """Load config.json and the safetensors weights of a model directory."""
        config = ModelConfig.load(model_dir)
        with SafetensorsBundle.from_directory(model_dir) as bundle:
            return load_parameters(bundle, config, logger=logger, check_shapes=check_shapes)

    def named_tensors(self) -> Iterator[Tuple[str, Tensor]]:
        """Yield (name, tensor) for every weight, in load order."""
        yield "embedding_table", self.embedding_table
        for layer in range(self.num_layers):
            for field, _ in LAYER_WEIGHTS:
                yield f"layers.{layer}.{field}", getattr(self, field)[layer]
        yield "output_norm_w", self.output_norm_w
        yield "lm_head", self.lm_head

    def num_parameters(self) -> int:
        """Element count of all weights, with shared storage counted once."""
        return count_parameters(self)

    def to_state_dict(self, device=None) -> Dict[str, torch.Tensor]:
        """
        Copy every weight into a torch tensor keyed by its checkpoint name.

        The embedding table is always exported as model.embed_tokens.weight,
        so tied checkpoints come back with both keys present.
        """
        device = resolve_device(device)
        state = {EMBED_TOKENS: self.embedding_table.to_torch(device)}
        for layer in range(self.num_layers):
            for field, suffix in LAYER_WEIGHTS:
                state[layer_key(layer, suffix)] = getattr(self, field)[layer].to_torch(device)
        state[OUTPUT_NORM] = self.output_norm_w.to_torch(device)
        state[LM_HEAD] = self.lm_head.to_torch(device)
        return state


def _get_tensor(
    bundle: TensorBundle,
    name: str,
    expected_shape: Optional[Tuple[int, ...]],
    logger: LoadLogger,
) -> Tensor:
    try:
        record = bundle.lookup(name)
    except KeyError:
        raise MissingTensor(name) from None

    if record.dtype != EXPECTED_DTYPE:
        raise DtypeMismatch(name, EXPECTED_DTYPE, record.dtype)
    if expected_shape is not None and tuple(record.shape) != tuple(expected_shape):
        raise UnexpectedShape(name, expected_shape, record.shape)

    try:
        tensor = Tensor.from_bytes(record.data, record.shape, dtype="<f4")
    except ShapeMismatch as e:
        raise ShapeMismatch(f"Tensor {name}: {e}") from e

    logger.log_tensor(name, record.shape, record.dtype)
    return tensor


def load_parameters(
    bundle: TensorBundle,
    config: ModelConfig,
    logger: Optional[LoadLogger] = None,
    check_shapes: bool = True,
) -> ParameterStore:
    """
    Build a ParameterStore from a tensor bundle.

    Args:
        bundle: Provider of named, typed, shaped byte payloads.
        config: Model configuration; num_layers decides how many decoder
                layers are read, and (with check_shapes) the expected shapes.
        logger: Where progress goes. Defaults to a console logger that only
                prints the summary lines.
        check_shapes: Compare every tensor's shape against the configuration.

    Raises:
        MissingTensor: A required name is absent from the bundle.
        DtypeMismatch: A tensor is not stored as F32.
        UnexpectedShape: A tensor's shape disagrees with the configuration.
        ShapeMismatch: A payload does not hold the number of elements its
                       declared shape needs.
    """
    config.validate()
    if logger is None:
        logger = LoadLogger(verbose=False)
    shapes = expected_shapes(config) if check_shapes else {}

    def get(name: str) -> Tensor:
        return _get_tensor(bundle, name, shapes.get(name), logger)

    logger.log_info(
        f"Loading {config.num_layers} layers "
        f"({len(weight_names(config))} tensors) from {type(bundle).__name__}"
    )
    try:
        with Timer("Load") as timer:
            embedding_table = get(embedding_key(config))
            per_layer = {field: [] for field, _ in LAYER_WEIGHTS}
            for layer in range(config.num_layers):
                for field, suffix in LAYER_WEIGHTS:
                    per_layer[field].append(get(layer_key(layer, suffix)))
            output_norm_w = get(OUTPUT_NORM)
            if config.tie_word_embeddings:
                lm_head = embedding_table.clone()
            else:
                lm_head = get(LM_HEAD)
    except Exception as e:
        logger.log_error(str(e))
        raise

    store = ParameterStore(
        embedding_table=embedding_table,
        output_norm_w=output_norm_w,
        lm_head=lm_head,
        **per_layer,
    )
    logger.log_info(
        f"Loaded {len(list(store.named_tensors()))} tensors, "
        f"{store.num_parameters():,d} parameters in {timer.elapsed:.3f}s"
    )
    return store
