"""Tests for manifest parsing and random sample selection."""

import json

import numpy as np
import pytest
from pydantic import ValidationError

from edge.manifest import load_manifest, parse_manifest, pick_random_sample
from shared.schemas import Sample


def _sample(index, npy=True):
    return Sample(
        original_path=f"images/{index}.png",
        precomputed_tensor_path=f"embeddings/{index}.npy" if npy else None,
        ground_truth_index=index % 4,
    )


class TestParseManifest:
    def test_accepts_dataset_field_names(self):
        records = [
            {
                "original_path": "images/a.png",
                "precomputed_path": "embeddings/a.npy",
                "class_label_remapped": 2,
                "split": "test",
            },
            {"original_path": "images/b.png", "npy_path": "embeddings/b.npy", "class_label_remapped": 0},
            {"original_path": "images/c.png", "ground_truth_index": 3},
        ]
        samples = parse_manifest(records)

        assert [s.original_path for s in samples] == ["images/a.png", "images/b.png", "images/c.png"]
        assert samples[0].precomputed_tensor_path == "embeddings/a.npy"
        assert samples[0].ground_truth_index == 2
        assert samples[1].precomputed_tensor_path == "embeddings/b.npy"
        assert samples[2].precomputed_tensor_path is None
        assert samples[2].key == "images/c.png"

    @pytest.mark.parametrize("label", [-1, 4, 7])
    def test_rejects_out_of_range_label(self, label):
        with pytest.raises(ValidationError):
            parse_manifest([{"original_path": "a.png", "class_label_remapped": label}])

    def test_rejects_missing_path(self):
        with pytest.raises(ValidationError):
            parse_manifest([{"class_label_remapped": 1}])

    def test_samples_are_frozen(self):
        sample = _sample(0)
        with pytest.raises(ValidationError):
            sample.original_path = "other.png"


class TestLoadManifest:
    def test_reads_json_list(self, tmp_path):
        path = tmp_path / "manifest.json"
        path.write_text(
            json.dumps([{"original_path": "a.png", "class_label_remapped": 1}]), encoding="utf-8"
        )
        samples = load_manifest(str(path))
        assert len(samples) == 1
        assert samples[0].ground_truth_index == 1

    def test_rejects_non_list(self, tmp_path):
        path = tmp_path / "manifest.json"
        path.write_text(json.dumps({"samples": []}), encoding="utf-8")
        with pytest.raises(ValueError):
            load_manifest(str(path))

    def test_invalid_record_becomes_value_error(self, tmp_path):
        path = tmp_path / "manifest.json"
        path.write_text(json.dumps([{"original_path": "a.png"}]), encoding="utf-8")
        with pytest.raises(ValueError):
            load_manifest(str(path))

    def test_missing_file(self, tmp_path):
        with pytest.raises(OSError):
            load_manifest(str(tmp_path / "absent.json"))


class TestPickRandomSample:
    def test_empty_manifest(self):
        assert pick_random_sample([], np.random.default_rng(0)) is None

    def test_single_sample_manifest(self):
        only = _sample(0)
        assert pick_random_sample([only], np.random.default_rng(0)) is only

    def test_draws_cover_the_manifest(self):
        samples = [_sample(i) for i in range(3)]
        rng = np.random.default_rng(11)
        picked = {pick_random_sample(samples, rng).key for _ in range(100)}
        assert picked == {s.key for s in samples}

    def test_seeded_picks_are_reproducible(self):
        samples = [_sample(i) for i in range(10)]
        first = [pick_random_sample(samples, np.random.default_rng(5)) for _ in range(3)]
        second = [pick_random_sample(samples, np.random.default_rng(5)) for _ in range(3)]
        assert first == second
