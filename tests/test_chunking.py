import pytest

from fusionrag.exceptions import ChunkTokenLimitExceededError, InputValidationError
from fusionrag.operate import chunking_by_token_size


def _words(n, prefix="w"):
    return " ".join(f"{prefix}{i}" for i in range(n))


def test_sliding_window_with_overlap(tokenizer):
    chunks = chunking_by_token_size(
        tokenizer, _words(25), chunk_overlap_token_size=2, chunk_token_size=10
    )
    assert [c["tokens"] for c in chunks] == [10, 10, 9]
    assert [c["chunk_order_index"] for c in chunks] == [0, 1, 2]
    # 相邻块共享 overlap 个 token
    assert chunks[0]["content"].split()[-2:] == chunks[1]["content"].split()[:2]
    assert chunks[-1]["content"].split()[-1] == "w24"


def test_short_text_is_one_chunk(tokenizer):
    chunks = chunking_by_token_size(tokenizer, "just a few words")
    assert len(chunks) == 1
    assert chunks[0]["content"] == "just a few words"
    assert chunks[0]["tokens"] == 4


def test_split_by_character_then_by_tokens(tokenizer):
    content = _words(3, "a") + "\n\n" + _words(12, "b")
    chunks = chunking_by_token_size(
        tokenizer,
        content,
        split_by_character="\n\n",
        chunk_overlap_token_size=0,
        chunk_token_size=5,
    )
    assert chunks[0]["content"] == "a0 a1 a2"
    assert [c["tokens"] for c in chunks[1:]] == [5, 5, 2]


def test_split_by_character_only_rejects_oversized_piece(tokenizer):
    content = "short piece\n\n" + _words(20)
    with pytest.raises(ChunkTokenLimitExceededError) as exc_info:
        chunking_by_token_size(
            tokenizer,
            content,
            split_by_character="\n\n",
            split_by_character_only=True,
            chunk_overlap_token_size=0,
            chunk_token_size=10,
        )
    assert exc_info.value.chunk_tokens == 20
    assert exc_info.value.chunk_token_limit == 10


def test_blank_pieces_are_dropped(tokenizer):
    chunks = chunking_by_token_size(
        tokenizer, "first\n\n   \n\nsecond", split_by_character="\n\n"
    )
    assert [c["content"] for c in chunks] == ["first", "second"]
    assert [c["chunk_order_index"] for c in chunks] == [0, 1]


@pytest.mark.parametrize("overlap,size", [(10, 10), (-1, 10), (0, 0)])
def test_invalid_sizes(tokenizer, overlap, size):
    with pytest.raises(InputValidationError):
        chunking_by_token_size(
            tokenizer, "text", chunk_overlap_token_size=overlap, chunk_token_size=size
        )
