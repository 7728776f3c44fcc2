"""
Model configuration for a LLaMA-style checkpoint.

The loader needs to know how many decoder layers to read and which shapes to
expect, and both come from the checkpoint's config.json. ModelConfig mirrors
the Hugging Face field names so a config.json can be loaded as-is; shorter
aliases (num_layers, num_heads, ...) are provided as properties.

EXPECTED WEIGHT SHAPES (H = hidden_size, I = intermediate_size,
V = vocab_size, D = head_dim):
  ─────────────────────────────────────────────
  embedding table / lm head     (V, H)
  input / post-attn norms       (H,)
  q_proj                        (num_heads * D, H)
  k_proj, v_proj                (num_kv_heads * D, H)
  o_proj                        (H, num_heads * D)
  up_proj, gate_proj            (I, H)
  down_proj                     (H, I)
  final norm                    (H,)
"""

from dataclasses import dataclass, asdict, fields
from typing import Optional
import json
import os


CONFIG_FILE = "config.json"


@dataclass
class ModelConfig:
    """
    Architecture hyperparameters, as found in a LLaMA config.json.

    Defaults describe a small story-generation model with tied input and
    output embeddings.
    """

    vocab_size: int = 2048
    hidden_size: int = 128
    intermediate_size: int = 384
    num_hidden_layers: int = 2
    num_attention_heads: int = 8
    # None means plain multi-head attention (one KV head per query head).
    num_key_value_heads: Optional[int] = None
    max_position_embeddings: int = 512
    rms_norm_eps: float = 1e-6
    rope_theta: float = 10000.0
    # When True the checkpoint stores a single matrix, "lm_head.weight",
    # used both as the embedding table and as the output projection.
    tie_word_embeddings: bool = True
    torch_dtype: str = "float32"
    bos_token_id: int = 1
    eos_token_id: int = 2

    def __post_init__(self):
        if self.num_key_value_heads is None:
            self.num_key_value_heads = self.num_attention_heads

    @property
    def num_layers(self) -> int:
        return self.num_hidden_layers

    @property
    def num_heads(self) -> int:
        return self.num_attention_heads

    @property
    def num_kv_heads(self) -> int:
        return self.num_key_value_heads

    @property
    def head_dim(self) -> int:
        """Dimension of each attention head: hidden_size / num_heads."""
        assert self.hidden_size % self.num_attention_heads == 0, (
            f"hidden_size ({self.hidden_size}) must be divisible by "
            f"num_attention_heads ({self.num_attention_heads})"
        )
        return self.hidden_size // self.num_attention_heads

    @property
    def n_kv_groups(self) -> int:
        """Number of query heads sharing one KV head."""
        assert self.num_attention_heads % self.num_key_value_heads == 0, (
            f"num_attention_heads ({self.num_attention_heads}) must be divisible by "
            f"num_key_value_heads ({self.num_key_value_heads})"
        )
        return self.num_attention_heads // self.num_key_value_heads

    def validate(self) -> None:
        """
        Validate configuration constraints.

        Called before loading so that a broken config fails with a clear
        message instead of as a shape error on some deep layer weight.
        """
        assert self.vocab_size > 0, "vocab_size must be positive"
        assert self.hidden_size > 0, "hidden_size must be positive"
        assert self.intermediate_size > 0, "intermediate_size must be positive"
        assert self.num_hidden_layers > 0, "num_hidden_layers must be positive"
        assert self.num_attention_heads > 0, "num_attention_heads must be positive"
        assert self.num_key_value_heads > 0, "num_key_value_heads must be positive"
        assert self.num_key_value_heads <= self.num_attention_heads, (
            f"num_key_value_heads ({self.num_key_value_heads}) cannot exceed "
            f"num_attention_heads ({self.num_attention_heads})"
        )
        assert self.hidden_size % self.num_attention_heads == 0, (
            f"hidden_size ({self.hidden_size}) must be divisible by "
            f"num_attention_heads ({self.num_attention_heads})"
        )
        assert self.num_attention_heads % self.num_key_value_heads == 0, (
            f"num_attention_heads ({self.num_attention_heads}) must be divisible by "
            f"num_key_value_heads ({self.num_key_value_heads})"
        )

    def to_dict(self) -> dict:
        """Convert to dictionary for serialization."""
        return asdict(self)

    @classmethod
    def from_dict(cls, d: dict) -> "ModelConfig":
        """
        Reconstruct from a dictionary.

        Real config.json files carry many more keys (architectures,
        hidden_act, ...) than the loader needs; unknown keys are ignored.
        """
        known = {f.name for f in fields(cls)}
        return cls(**{k: v for k, v in d.items() if k in known})

    def save(self, path: str) -> None:
        """Save configuration to JSON file."""
        os.makedirs(os.path.dirname(path) or ".", exist_ok=True)
        with open(path, "w") as f:
            json.dump(self.to_dict(), f, indent=2)

    @classmethod
    def load(cls, path: str) -> "ModelConfig":
        """Load configuration from a JSON file or a model directory."""
        if os.path.isdir(path):
            path = os.path.join(path, CONFIG_FILE)
        if not os.path.exists(path):
            raise FileNotFoundError(f"Configuration file not found at {path}")
        with open(path, "r") as f:
            return cls.from_dict(json.load(f))
