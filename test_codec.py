"""Tests for record batch encoding and result decoding."""

import pyarrow as pa
import pytest

from codec import batch_to_keys, batch_to_results, records_to_batch
from errors import InsertError
from models import memory_model, memory_schema
from utils import escape_filter_value, key_predicate, prefix_predicate


def make_record(key="k1", embedding=(1.0, 0.0, 0.0, 0.0), metadata=None, dim=4):
    return memory_model(dim)(
        key=key,
        agent_id="main",
        text=f"text for {key}",
        embedding=list(embedding),
        metadata=metadata,
        created_at=1_700_000_000_000,
    )


class TestSchema:
    def test_field_order_and_types(self):
        schema = memory_schema(4)
        assert schema.names == ["key", "agent_id", "text", "embedding", "metadata", "created_at"]
        assert schema.field("embedding").type == pa.list_(pa.float32(), 4)
        assert schema.field("created_at").type == pa.int64()
        assert schema.field("metadata").nullable
        assert not schema.field("key").nullable

    def test_width_follows_dimension(self):
        assert memory_schema(8).field("embedding").type.list_size == 8


class TestEncode:
    def test_single_row(self):
        batch = records_to_batch([make_record(metadata='{"a": 1}')], 4)

        assert batch.num_rows == 1
        assert batch.schema.equals(memory_schema(4))
        assert batch.column("embedding").values.to_pylist() == [1.0, 0.0, 0.0, 0.0]
        assert batch.column("metadata").to_pylist() == ['{"a": 1}']

    def test_embeddings_are_flattened_contiguously(self):
        records = [
            make_record("a", (1.0, 2.0, 3.0, 4.0)),
            make_record("b", (5.0, 6.0, 7.0, 8.0)),
        ]
        batch = records_to_batch(records, 4)

        assert batch.column("embedding").values.to_pylist() == [1.0, 2.0, 3.0, 4.0, 5.0, 6.0, 7.0, 8.0]
        assert batch.column("embedding").to_pylist()[1] == [5.0, 6.0, 7.0, 8.0]

    def test_null_metadata(self):
        batch = records_to_batch([make_record(metadata=None)], 4)
        assert batch.column("metadata").null_count == 1

    def test_mismatched_embedding_fails(self):
        bad = memory_model(4).model_construct(
            key="k", agent_id="main", text="t", embedding=[1.0, 2.0], metadata=None, created_at=0
        )
        with pytest.raises(InsertError, match="Failed to create record batch"):
            records_to_batch([make_record(), bad], 4)


class TestDecode:
    def test_score_from_distance(self):
        table = pa.table(
            {
                "key": ["a", "b"],
                "text": ["A", "B"],
                "metadata": ['{"x": 1}', None],
                "_distance": pa.array([0.0, 0.25], type=pa.float32()),
            }
        )
        results = batch_to_results(table)

        assert [r.key for r in results] == ["a", "b"]
        assert results[0].score == pytest.approx(1.0)
        assert results[1].score == pytest.approx(0.75)
        assert results[0].metadata == '{"x": 1}'
        assert results[1].metadata is None

    def test_missing_optional_columns(self):
        results = batch_to_results(pa.table({"key": ["a"], "text": ["A"]}))
        assert results[0].score == 0.0
        assert results[0].metadata is None

    def test_missing_required_columns_skipped(self):
        assert batch_to_results(pa.table({"key": ["a"]})) == []

    def test_rows_with_null_key_skipped(self):
        results = batch_to_results(pa.table({"key": ["a", None], "text": ["A", "B"]}))
        assert [r.key for r in results] == ["a"]

    def test_keys(self):
        assert batch_to_keys(pa.table({"key": ["a", "b"]})) == ["a", "b"]
        assert batch_to_keys(pa.table({"other": [1]})) == []


class TestPredicates:
    def test_escape(self):
        assert escape_filter_value("it's") == "it''s"

    def test_key_predicate(self):
        assert key_predicate("o'brien") == "key = 'o''brien'"

    def test_prefix_predicate(self):
        assert prefix_predicate("proj:") == "starts_with(key, 'proj:')"
        assert prefix_predicate("a'") == "starts_with(key, 'a''')"
