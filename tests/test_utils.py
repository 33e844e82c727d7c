import logging

from fusionrag.constants import GRAPH_FIELD_SEP
from fusionrag.utils import (
    apply_source_ids_limit,
    compute_mdhash_id,
    extract_file_name,
    generate_reference_list_from_chunks,
    limit_file_paths,
    make_relation_chunk_key,
    merge_source_ids,
    normalize_entity_name,
    pick_by_vector_similarity,
    pick_by_weighted_polling,
    sanitize_and_normalize_extracted_text,
    setup_logger,
    split_string_by_multi_markers,
    truncate_list_by_token_size,
)


def test_compute_mdhash_id_is_stable_and_prefixed():
    assert compute_mdhash_id("hello", prefix="doc-") == compute_mdhash_id("hello", prefix="doc-")
    assert compute_mdhash_id("hello", prefix="doc-").startswith("doc-")
    assert compute_mdhash_id("hello") != compute_mdhash_id("hello!")


def test_normalize_entity_name():
    assert normalize_entity_name("  Alice   Smith ") == "alice smith"
    assert normalize_entity_name("ALICE") == normalize_entity_name("alice")
    assert normalize_entity_name("") == ""


def test_sanitize_strips_quotes_and_whitespace():
    assert sanitize_and_normalize_extracted_text('  "Alice\n Smith"  ') == "Alice Smith"
    assert sanitize_and_normalize_extracted_text('say "hi"', remove_inner_quotes=True) == "say hi"
    assert sanitize_and_normalize_extracted_text("") == ""


def test_split_string_by_multi_markers():
    assert split_string_by_multi_markers("a<|#|>b<#> c ", ["<|#|>", "<#>"]) == ["a", "b", "c"]
    assert split_string_by_multi_markers("abc", []) == ["abc"]


def test_truncate_list_stops_at_first_overflow(tokenizer):
    items = ["one two", "three four five", "six"]
    kept = truncate_list_by_token_size(items, key=lambda x: x, max_token_size=5, tokenizer=tokenizer)
    assert kept == ["one two", "three four five"]
    # 第一个超出预算的条目之后全部丢弃，即使后面的条目更短
    kept = truncate_list_by_token_size(items, key=lambda x: x, max_token_size=4, tokenizer=tokenizer)
    assert kept == ["one two"]
    assert truncate_list_by_token_size(items, key=lambda x: x, max_token_size=0, tokenizer=tokenizer) == []


def test_relation_chunk_key_is_order_independent():
    assert make_relation_chunk_key("b", "a") == make_relation_chunk_key("a", "b")
    assert make_relation_chunk_key("a", "b") == f"a{GRAPH_FIELD_SEP}b"


def test_merge_source_ids_keeps_first_seen_order():
    assert merge_source_ids(["c1", "c2"], ["c2", "c3", ""]) == ["c1", "c2", "c3"]
    assert merge_source_ids(None, ["c1"]) == ["c1"]


def test_apply_source_ids_limit_methods():
    ids = ["c1", "c2", "c3", "c4"]
    assert apply_source_ids_limit(ids, 2, "FIFO") == ["c3", "c4"]
    assert apply_source_ids_limit(ids, 2, "KEEP") == ["c1", "c2"]
    assert apply_source_ids_limit(ids, 10, "FIFO") == ids
    assert apply_source_ids_limit(ids, 0, "FIFO") == []


def test_limit_file_paths_appends_placeholder():
    kept = limit_file_paths(["a.txt", "b.txt", "c.txt"], 2, "KEEP")
    assert kept[:2] == ["a.txt", "b.txt"]
    assert kept[2].startswith("...") and "1 more" in kept[2]


def test_extract_file_name():
    assert extract_file_name("/data/docs/report.pdf") == "report.pdf"
    assert extract_file_name("https://example.com/papers/a.html") == "a.html"
    assert extract_file_name(None) == "unknown"


def test_reference_list_orders_by_frequency_then_first_seen():
    chunks = [
        {"chunk_id": "1", "file_path": "a.txt"},
        {"chunk_id": "2", "file_path": "b.txt"},
        {"chunk_id": "3", "file_path": "b.txt"},
        {"chunk_id": "4", "file_path": "unknown_source"},
    ]
    references, updated = generate_reference_list_from_chunks(chunks)
    assert references == [
        {"reference_id": "1", "file_path": "b.txt"},
        {"reference_id": "2", "file_path": "a.txt"},
    ]
    assert [c["reference_id"] for c in updated] == ["2", "1", "1", ""]


def test_weighted_polling_gives_more_chunks_to_higher_ranked_items():
    items = [
        {"sorted_chunks": ["a1", "a2", "a3"]},
        {"sorted_chunks": ["b1", "b2", "b3"]},
    ]
    picked = pick_by_weighted_polling(items, max_related_chunks=3, min_related_chunks=1)
    assert picked == ["a1", "a2", "a3", "b1"]


def test_pick_by_vector_similarity():
    vectors = {"x": [1.0, 0.0], "y": [0.0, 1.0], "z": [0.7, 0.7]}
    picked = pick_by_vector_similarity([1.0, 0.0], vectors, 2)
    assert [cid for cid, _ in picked] == ["x", "z"]
    assert pick_by_vector_similarity(None, vectors, 2) == []


def test_setup_logger_does_not_stack_handlers():
    target = setup_logger("fusionrag.test", level="DEBUG")
    setup_logger("fusionrag.test", level="DEBUG")
    assert target.level == logging.DEBUG
    assert len(target.handlers) == 1
    target.handlers.clear()
