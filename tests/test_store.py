"""
Tests for the local content index.
"""

from __future__ import annotations

import json

import pytest

from mediaseal.store import ContentIndex, ContentIndexError

CID_A = "0x" + "aa" * 32
CID_B = "0x" + "bb" * 32


@pytest.fixture
def index(tmp_path):
    return ContentIndex(root=tmp_path / "idx")


class TestContentIndex:

    def test_empty(self, index):
        assert index.list() == []
        assert index.get(CID_A) is None
        assert index.lookup_by_piece("bagaX") is None

    def test_record_and_get(self, index):
        entry = index.record(CID_A, "bagaA", tx_hash="0x01", dataset_owner="0xowner", algorithm=1)
        assert entry["piece_id"] == "bagaA"
        stored = index.get(CID_A)
        assert stored["tx_hash"] == "0x01"
        assert stored["dataset_owner"] == "0xowner"
        assert stored["algorithm"] == 1
        assert "recorded_at" in stored

    def test_list_sorted(self, index):
        index.record(CID_B, "bagaB")
        index.record(CID_A, "bagaA")
        assert [e["content_id"] for e in index.list()] == [CID_A, CID_B]

    def test_lookup_by_piece(self, index):
        index.record(CID_A, "bagaA")
        index.record(CID_B, "bagaB")
        assert index.lookup_by_piece("bagaB") == CID_B
        assert index.lookup_by_piece("") is None

    def test_same_mapping_is_noop(self, index):
        first = index.record(CID_A, "bagaA", tx_hash="0x01")
        again = index.record(CID_A, "bagaA", tx_hash="0x01")
        assert again["recorded_at"] == first["recorded_at"]

    def test_conflicting_piece_rejected(self, index):
        index.record(CID_A, "bagaA")
        with pytest.raises(ContentIndexError, match="already mapped"):
            index.record(CID_A, "bagaOTHER")
        assert index.get(CID_A)["piece_id"] == "bagaA"

    def test_force_overwrites(self, index):
        index.record(CID_A, "bagaA")
        index.record(CID_A, "bagaOTHER", force=True)
        assert index.get(CID_A)["piece_id"] == "bagaOTHER"

    @pytest.mark.parametrize("bad", ["", "0x1234", "aa" * 32, "0x" + "AA" * 32, "../../etc/passwd"])
    def test_invalid_content_id(self, index, bad):
        with pytest.raises(ValueError):
            index.record(bad, "bagaA")

    def test_persisted_as_json(self, index):
        index.record(CID_A, "bagaA")
        data = json.loads(index.index_path.read_text())
        assert data[CID_A]["piece_id"] == "bagaA"
        assert ContentIndex(index.root).get(CID_A)["piece_id"] == "bagaA"

    def test_corrupt_index_treated_as_empty(self, index):
        index.root.mkdir(parents=True)
        index.index_path.write_text("[1, 2")
        assert index.list() == []

    def test_no_temp_files_left(self, index):
        index.record(CID_A, "bagaA")
        assert [p.name for p in index.root.iterdir()] == ["index.json"]
