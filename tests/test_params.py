"""
Unit tests for the ParameterStore loader.

Tests verify:
  1. Every per-layer list has exactly num_layers entries, for any layer count
  2. Decoded tensors match the bundle's payloads
  3. Loading is all-or-nothing: missing names, wrong dtypes, wrong shapes
     and corrupt payloads abort with an error naming the tensor
  4. Tied embeddings share one buffer
  5. Export to torch and the on-disk (safetensors + config.json) path
"""

import sys
import os

import numpy as np
import torch
import pytest
from safetensors.torch import save_file

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from llama_tensor.bundle import DictBundle, SafetensorsBundle, TensorRecord
from llama_tensor.config import ModelConfig
from llama_tensor.params import (
    LAYER_WEIGHTS,
    ParameterStore,
    MissingTensor,
    DtypeMismatch,
    UnexpectedShape,
    expected_shapes,
    load_parameters,
    weight_names,
)
from llama_tensor.tensor import ShapeMismatch
from llama_tensor.utils import LoadLogger, count_parameters, print_store_summary


def tiny_config(**overrides):
    values = dict(
        vocab_size=32,
        hidden_size=16,
        intermediate_size=24,
        num_hidden_layers=2,
        num_attention_heads=4,
        num_key_value_heads=2,
    )
    values.update(overrides)
    return ModelConfig(**values)


def random_arrays(config, seed=0):
    rng = np.random.default_rng(seed)
    return {
        name: rng.standard_normal(shape).astype(np.float32)
        for name, shape in expected_shapes(config).items()
    }


@pytest.fixture
def config():
    return tiny_config()


@pytest.fixture
def arrays(config):
    return random_arrays(config)


@pytest.fixture
def bundle(arrays):
    return DictBundle.from_arrays(arrays)


class TestNames:

    def test_weight_names_follow_layer_count(self):
        config = tiny_config(num_hidden_layers=5)
        names = weight_names(config)
        assert len(names) == 1 + 5 * len(LAYER_WEIGHTS) + 1
        assert names[0] == "lm_head.weight"
        assert names[-1] == "model.norm.weight"
        assert "model.layers.4.mlp.down_proj.weight" in names
        assert "model.layers.5.mlp.down_proj.weight" not in names

    def test_untied_names(self):
        names = weight_names(tiny_config(tie_word_embeddings=False))
        assert names[0] == "model.embed_tokens.weight"
        assert names[-1] == "lm_head.weight"

    def test_expected_shapes_gqa(self, config):
        shapes = expected_shapes(config)
        # head_dim = 16 / 4 = 4; 2 KV heads
        assert shapes["model.layers.0.self_attn.q_proj.weight"] == (16, 16)
        assert shapes["model.layers.0.self_attn.k_proj.weight"] == (8, 16)
        assert shapes["model.layers.1.self_attn.o_proj.weight"] == (16, 16)
        assert shapes["model.layers.1.mlp.down_proj.weight"] == (16, 24)
        assert shapes["lm_head.weight"] == (32, 16)


class TestLoad:

    def test_loads_all_layers(self, bundle, arrays, config):
        store = load_parameters(bundle, config)
        assert store.num_layers == 2
        for field, _ in LAYER_WEIGHTS:
            assert len(getattr(store, field)) == 2

        wk1 = store.wk[1]
        assert wk1.shape == (8, 16)
        np.testing.assert_array_equal(
            wk1.numpy(), arrays["model.layers.1.self_attn.k_proj.weight"]
        )
        assert store.output_norm_w.shape == (16,)
        assert store.embedding_table.shape == (32, 16)

    @pytest.mark.parametrize("num_layers", [1, 3, 6])
    def test_any_layer_count(self, num_layers):
        config = tiny_config(num_hidden_layers=num_layers)
        store = load_parameters(DictBundle.from_arrays(random_arrays(config)), config)
        assert store.num_layers == num_layers
        assert len(store.w_down) == num_layers

    def test_tied_embeddings_share_storage(self, bundle, config):
        store = load_parameters(bundle, config)
        assert store.embedding_table.shares_storage(store.lm_head)
        total = sum(t.size for _, t in store.named_tensors())
        assert store.num_parameters() == total - 32 * 16
        assert count_parameters(store) == store.num_parameters()

    def test_untied_embeddings(self):
        config = tiny_config(tie_word_embeddings=False)
        arrays = random_arrays(config)
        store = load_parameters(DictBundle.from_arrays(arrays), config)
        assert not store.embedding_table.shares_storage(store.lm_head)
        np.testing.assert_array_equal(
            store.embedding_table.numpy(), arrays["model.embed_tokens.weight"]
        )

    def test_from_bundle(self, bundle, config):
        store = ParameterStore.from_bundle(bundle, config)
        assert store.num_layers == config.num_layers


class TestLoadFailures:

    def test_missing_tensor(self, bundle, config):
        bundle.remove("model.layers.1.self_attn.k_proj.weight")
        with pytest.raises(MissingTensor) as exc_info:
            load_parameters(bundle, config)
        assert exc_info.value.name == "model.layers.1.self_attn.k_proj.weight"
        assert "model.layers.1.self_attn.k_proj.weight" in str(exc_info.value)

    def test_missing_extra_layer(self, bundle):
        """Configuring more layers than the bundle holds is a missing tensor."""
        with pytest.raises(MissingTensor) as exc_info:
            load_parameters(bundle, tiny_config(num_hidden_layers=3))
        assert exc_info.value.name == "model.layers.2.input_layernorm.weight"

    @pytest.mark.parametrize("source", ["dict", "safetensors"])
    @pytest.mark.parametrize(
        "dtype_attr, code",
        [("float16", "F16"), ("uint16", "U16"), ("float8_e4m3fn", "F8_E4M3")],
    )
    def test_dtype_mismatch(self, arrays, config, tmp_path, source, dtype_attr, code):
        if not hasattr(torch, dtype_attr):
            pytest.skip(f"torch has no {dtype_attr}")
        name = "model.layers.0.mlp.up_proj.weight"
        tensors = {n: torch.from_numpy(arr) for n, arr in arrays.items()}
        tensors[name] = torch.ones(arrays[name].shape).to(getattr(torch, dtype_attr))
        if source == "dict":
            bundle = DictBundle.from_arrays(tensors)
        else:
            save_file(tensors, str(tmp_path / "model.safetensors"))
            bundle = SafetensorsBundle(str(tmp_path / "model.safetensors"))

        logger = LoadLogger(log_dir=str(tmp_path))
        with pytest.raises(DtypeMismatch) as exc_info:
            load_parameters(bundle, config, logger=logger)
        logger.close()
        if source == "safetensors":
            bundle.close()
        err = exc_info.value
        assert (err.name, err.expected, err.found) == (name, "F32", code)
        with open(logger.log_path) as f:
            assert f"[ERROR] Expected tensor {name} to have dtype F32, but found {code}" in f.read()

    def test_unexpected_shape(self, bundle, config):
        name = "model.norm.weight"
        bundle.add(DictBundle.from_arrays({name: np.ones(17, dtype=np.float32)}).lookup(name))
        with pytest.raises(UnexpectedShape) as exc_info:
            load_parameters(bundle, config)
        assert exc_info.value.expected == (16,)
        assert exc_info.value.found == (17,)

        store = load_parameters(bundle, config, check_shapes=False)
        assert store.output_norm_w.shape == (17,)

    def test_corrupt_payload(self, bundle, config):
        name = "model.layers.0.input_layernorm.weight"
        bundle.add(TensorRecord(name, (16,), "F32", b"\x00" * 60))
        with pytest.raises(ShapeMismatch, match=name):
            load_parameters(bundle, config)

    def test_invalid_config(self, bundle):
        with pytest.raises(AssertionError):
            load_parameters(bundle, tiny_config(num_key_value_heads=3))

    def test_error_is_logged(self, bundle, config, tmp_path):
        bundle.remove("model.norm.weight")
        logger = LoadLogger(log_dir=str(tmp_path))
        with pytest.raises(MissingTensor):
            load_parameters(bundle, config, logger=logger)
        logger.close()
        with open(logger.log_path) as f:
            text = f.read()
        assert "[ERROR] Tensor model.norm.weight not found in bundle" in text


class TestExport:

    def test_to_state_dict(self, bundle, arrays, config):
        store = load_parameters(bundle, config)
        state = store.to_state_dict()
        assert set(state) == set(arrays) | {"model.embed_tokens.weight"}
        for name, arr in arrays.items():
            assert torch.equal(state[name], torch.from_numpy(arr))
        assert torch.equal(state["model.embed_tokens.weight"], state["lm_head.weight"])

    def test_named_tensors(self, bundle, config):
        store = load_parameters(bundle, config)
        names = [name for name, _ in store.named_tensors()]
        assert names[0] == "embedding_table"
        assert "layers.1.w_gate" in names
        assert names[-1] == "lm_head"

    def test_summary(self, bundle, config, capsys):
        store = load_parameters(bundle, config)
        summary = print_store_summary(store)
        assert "layers.0.wq" in summary
        assert f"{store.num_parameters():,d}" in summary
        assert "Parameter Store Summary" in capsys.readouterr().out

    def test_verbose_logger_lists_tensors(self, bundle, config, tmp_path):
        logger = LoadLogger(log_dir=str(tmp_path), verbose=True)
        load_parameters(bundle, config, logger=logger)
        logger.close()
        with open(logger.log_path) as f:
            text = f.read()
        for name in weight_names(config):
            assert name in text
        assert "[INFO] Loaded" in text


class TestFromPretrained:

    def test_roundtrip_from_disk(self, arrays, config, tmp_path):
        config.save(str(tmp_path / "config.json"))
        save_file(
            {name: torch.from_numpy(arr) for name, arr in arrays.items()},
            str(tmp_path / "model.safetensors"),
        )
        store = ParameterStore.from_pretrained(str(tmp_path))
        assert store.num_layers == 2
        np.testing.assert_array_equal(
            store.wq[0].numpy(), arrays["model.layers.0.self_attn.q_proj.weight"]
        )
        assert store.lm_head.shares_storage(store.embedding_table)
