"""Tests for the ONNX model manager."""

from __future__ import annotations

import time
from pathlib import Path
from unittest.mock import MagicMock, patch

import pytest

from visiontag.config import Settings
from visiontag.ml.model_manager import MODEL_REGISTRY, OnnxModelManager, parse_labels

# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _make_settings(**overrides: object) -> Settings:
    defaults: dict[str, object] = {
        "device": "cpu",
        "models_dir": "/tmp/visiontag_test_models",
        "model_ttl": 300,
        "intra_op_threads": 0,
        "inter_op_threads": 1,
        "gpu_mem_limit": 2_147_483_648,
        "max_concurrent": 2,
    }
    defaults.update(overrides)
    return Settings(**defaults)  # type: ignore[arg-type]


# ---------------------------------------------------------------------------
# Model registry tests
# ---------------------------------------------------------------------------


class TestModelRegistry:
    def test_known_model_lookup(self) -> None:
        spec = MODEL_REGISTRY["mobilenet_v2"]
        assert spec.name == "mobilenet_v2"
        assert spec.input_size == 224
        assert spec.labels_filename == "imagenet_labels.txt"

    def test_unknown_model_raises_keyerror(self) -> None:
        with pytest.raises(KeyError):
            MODEL_REGISTRY["nonexistent_model"]

    def test_registry_keys_match_names(self) -> None:
        assert all(name == spec.name for name, spec in MODEL_REGISTRY.items())

    def test_imagenet_normalization_defaults(self) -> None:
        spec = MODEL_REGISTRY["mobilenet_v3_small"]
        assert spec.mean == pytest.approx((0.485, 0.456, 0.406))
        assert spec.std == pytest.approx((0.229, 0.224, 0.225))
        assert spec.apply_softmax is True


class TestParseLabels:
    def test_one_label_per_line(self) -> None:
        assert parse_labels("tench\ngoldfish\ngreat white shark\n") == ["tench", "goldfish", "great white shark"]

    def test_blank_lines_and_padding_ignored(self) -> None:
        assert parse_labels("\n  cliff, drop, drop-off  \n\n\r\nvalley\n") == ["cliff, drop, drop-off", "valley"]


# ---------------------------------------------------------------------------
# OnnxModelManager tests
# ---------------------------------------------------------------------------


class TestOnnxModelManager:
    @patch("visiontag.ml.model_manager.hf_hub_download")
    def test_ensure_downloaded_calls_hf_hub_download(self, mock_download: MagicMock) -> None:
        mock_download.return_value = "/tmp/visiontag_test_models/mobilenet_v2.onnx"
        settings = _make_settings()
        mgr = OnnxModelManager(settings)

        path = mgr.ensure_downloaded("mobilenet_v2")

        mock_download.assert_called_once_with(
            repo_id="visiontag/visiontag-models",
            filename="mobilenet_v2.onnx",
            local_dir="/tmp/visiontag_test_models",
        )
        assert path == Path("/tmp/visiontag_test_models/mobilenet_v2.onnx")

    @patch("visiontag.ml.model_manager.hf_hub_download")
    def test_ensure_downloaded_skips_existing(self, mock_download: MagicMock, tmp_path: Path) -> None:
        model_file = tmp_path / "mobilenet_v2.onnx"
        model_file.touch()
        mock_download.return_value = str(model_file)

        settings = _make_settings(models_dir=str(tmp_path))
        mgr = OnnxModelManager(settings)

        first = mgr.ensure_downloaded("mobilenet_v2")
        second = mgr.ensure_downloaded("mobilenet_v2")

        mock_download.assert_called_once()
        assert first == second == model_file

    @patch("visiontag.ml.model_manager.hf_hub_download")
    def test_ensure_downloaded_refetches_deleted_file(self, mock_download: MagicMock, tmp_path: Path) -> None:
        model_file = tmp_path / "mobilenet_v2.onnx"
        model_file.touch()
        mock_download.return_value = str(model_file)

        mgr = OnnxModelManager(_make_settings(models_dir=str(tmp_path)))
        mgr.ensure_downloaded("mobilenet_v2")
        model_file.unlink()
        mgr.ensure_downloaded("mobilenet_v2")

        assert mock_download.call_count == 2

    @patch("visiontag.ml.model_manager.hf_hub_download")
    def test_get_labels_parses_and_caches(self, mock_download: MagicMock, tmp_path: Path) -> None:
        labels_file = tmp_path / "imagenet_labels.txt"
        labels_file.write_text("tench\ngoldfish\n\n", encoding="utf-8")
        mock_download.return_value = str(labels_file)

        mgr = OnnxModelManager(_make_settings(models_dir=str(tmp_path)))

        assert mgr.get_labels("mobilenet_v2") == ["tench", "goldfish"]
        assert mgr.get_labels("mobilenet_v2") == ["tench", "goldfish"]
        mock_download.assert_called_once_with(
            repo_id="visiontag/visiontag-models",
            filename="imagenet_labels.txt",
            local_dir=str(tmp_path),
        )

    @patch("visiontag.ml.model_manager.hf_hub_download")
    def test_get_labels_rejects_empty_file(self, mock_download: MagicMock, tmp_path: Path) -> None:
        labels_file = tmp_path / "imagenet_labels.txt"
        labels_file.write_text("\n\n", encoding="utf-8")
        mock_download.return_value = str(labels_file)

        mgr = OnnxModelManager(_make_settings(models_dir=str(tmp_path)))

        with pytest.raises(ValueError, match="empty"):
            mgr.get_labels("mobilenet_v2")

    @patch("visiontag.ml.model_manager.InferenceSession")
    @patch("visiontag.ml.model_manager.hf_hub_download")
    def test_get_session_creates_and_caches(self, mock_download: MagicMock, mock_session_cls: MagicMock) -> None:
        mock_download.return_value = "/tmp/visiontag_test_models/mobilenet_v2.onnx"
        mock_session = MagicMock()
        mock_session_cls.return_value = mock_session

        settings = _make_settings()
        mgr = OnnxModelManager(settings)

        session1 = mgr.get_session("mobilenet_v2")
        session2 = mgr.get_session("mobilenet_v2")

        assert session1 is mock_session
        assert session2 is mock_session
        mock_session_cls.assert_called_once()

    @patch("visiontag.ml.model_manager.InferenceSession")
    @patch("visiontag.ml.model_manager.hf_hub_download")
    def test_get_loaded_models(self, mock_download: MagicMock, mock_session_cls: MagicMock) -> None:
        mock_download.return_value = "/tmp/visiontag_test_models/mobilenet_v2.onnx"
        settings = _make_settings()
        mgr = OnnxModelManager(settings)

        assert mgr.get_loaded_models() == []
        mgr.get_session("mobilenet_v2")
        assert mgr.get_loaded_models() == ["mobilenet_v2"]

    @patch("visiontag.ml.model_manager.InferenceSession")
    @patch("visiontag.ml.model_manager.hf_hub_download")
    def test_unload_idle_models_removes_expired(self, mock_download: MagicMock, mock_session_cls: MagicMock) -> None:
        mock_download.return_value = "/tmp/visiontag_test_models/mobilenet_v2.onnx"
        settings = _make_settings(model_ttl=1)
        mgr = OnnxModelManager(settings)
        mgr.get_session("mobilenet_v2")

        # Fake the last_used time to be in the past.
        mgr._sessions["mobilenet_v2"].last_used = time.monotonic() - 10

        mgr.unload_idle_models()
        assert mgr.get_loaded_models() == []

    @patch("visiontag.ml.model_manager.InferenceSession")
    @patch("visiontag.ml.model_manager.hf_hub_download")
    def test_unload_idle_keeps_recent(self, mock_download: MagicMock, mock_session_cls: MagicMock) -> None:
        mock_download.return_value = "/tmp/visiontag_test_models/mobilenet_v2.onnx"
        mgr = OnnxModelManager(_make_settings(model_ttl=300))
        mgr.get_session("mobilenet_v2")

        mgr.unload_idle_models()
        assert mgr.get_loaded_models() == ["mobilenet_v2"]

    def test_unload_idle_skipped_when_ttl_zero(self) -> None:
        settings = _make_settings(model_ttl=0)
        mgr = OnnxModelManager(settings)
        mgr.unload_idle_models()
        assert mgr.get_loaded_models() == []

    def test_provider_building_cpu(self) -> None:
        settings = _make_settings(device="cpu")
        mgr = OnnxModelManager(settings)
        assert mgr._providers == ["CPUExecutionProvider"]

    def test_provider_building_cuda(self) -> None:
        settings = _make_settings(device="cuda", gpu_mem_limit=1024)
        mgr = OnnxModelManager(settings)
        assert len(mgr._providers) == 2
        provider_name, provider_opts = mgr._providers[0]  # type: ignore[misc]
        assert provider_name == "CUDAExecutionProvider"
        assert provider_opts["device_id"] == 0
        assert provider_opts["gpu_mem_limit"] == 1024
        assert mgr._providers[1] == "CPUExecutionProvider"

    def test_provider_building_openvino(self) -> None:
        settings = _make_settings(device="openvino")
        mgr = OnnxModelManager(settings)
        assert len(mgr._providers) == 2
        provider_name, _provider_opts = mgr._providers[0]  # type: ignore[misc]
        assert provider_name == "OpenVINOExecutionProvider"
        assert mgr._providers[1] == "CPUExecutionProvider"

    @patch("visiontag.ml.model_manager.InferenceSession")
    @patch("visiontag.ml.model_manager.hf_hub_download")
    def test_shutdown_clears_sessions(self, mock_download: MagicMock, mock_session_cls: MagicMock) -> None:
        mock_download.return_value = "/tmp/visiontag_test_models/mobilenet_v2.onnx"
        settings = _make_settings()
        mgr = OnnxModelManager(settings)
        mgr.get_session("mobilenet_v2")
        assert len(mgr.get_loaded_models()) == 1

        mgr.shutdown()
        assert mgr.get_loaded_models() == []

    def test_unknown_model_raises_keyerror(self) -> None:
        settings = _make_settings()
        mgr = OnnxModelManager(settings)
        with pytest.raises(KeyError, match="Unknown model"):
            mgr.ensure_downloaded("totally_fake_model")
