from __future__ import annotations

from chatcore.utils import tokens
from chatcore.utils.tokens import (
    CHAT_ENCODING,
    ELISION_MARKER,
    LEGACY_MODEL,
    EncodingSpec,
    TokenizerPool,
    count_message_tokens,
    count_tokens,
    image_token_cost,
    select_encoding,
    token_split,
    truncate_middle,
    truncate_to_tokens,
)


class _Chars:
    def encode(self, text, allowed_special="all"):
        return [ord(c) for c in text]

    def decode(self, ids):
        return "".join(chr(i) for i in ids)


def test_pool_resets_after_threshold(char_pool):
    for _ in range(25):
        assert count_tokens("hello") == 5
    assert char_pool.resets == 0
    assert char_pool.calls == 25
    assert len(char_pool.loads) == 1

    # 26th call releases every encoder, then reloads lazily
    assert count_tokens("hello") == 5
    assert char_pool.resets == 1
    assert char_pool.calls == 1
    assert len(char_pool.loads) == 2
    assert CHAT_ENCODING in char_pool


def test_count_tokens_empty_text_still_counts_as_a_call(char_pool):
    assert count_tokens("") == 0
    assert count_tokens(None) == 0
    assert char_pool.calls == 2


def test_encode_failure_resets_and_retries_once():
    class Broken(_Chars):
        def encode(self, text, allowed_special="all"):
            raise RuntimeError("corrupted encoder")

    built = []

    def loader(key, is_model_name, extra):
        enc = Broken() if not built else _Chars()
        built.append(enc)
        return enc

    pool = TokenizerPool(loader=loader, reset_threshold=100)
    assert pool.count("abc", CHAT_ENCODING) == 3
    assert pool.resets == 1
    assert len(built) == 2


def test_unknown_model_falls_back_to_legacy_encoding():
    seen = []

    def loader(key, is_model_name, extra):
        seen.append(key)
        if key != LEGACY_MODEL:
            raise KeyError(key)
        return _Chars()

    pool = TokenizerPool(loader=loader, reset_threshold=100)
    assert pool.count("abcd", EncodingSpec("my-local-model", True)) == 4
    assert seen == ["my-local-model", LEGACY_MODEL]
    assert "my-local-model" in pool


def test_select_encoding():
    assert select_encoding("gpt-4o-mini", is_chat=True).key == "o200k_base"
    assert select_encoding("gpt-4", is_chat=True).key == "cl100k_base"
    legacy = select_encoding("text-chat-davinci", is_chat=False, is_unofficial=True)
    assert legacy.key == LEGACY_MODEL
    assert legacy.extra_special == {"<|im_start|>": 100264, "<|im_end|>": 100265}
    assert select_encoding("gpt-3.5-turbo-instruct", is_chat=False).key == LEGACY_MODEL
    assert select_encoding("text-davinci-002", is_chat=False) == EncodingSpec("text-davinci-002", True)


def test_count_message_tokens_overheads():
    # 3 per message + role + content
    assert count_message_tokens({"role": "user", "content": "hi"}) == 3 + 4 + 2
    # name adds its text plus one
    assert count_message_tokens({"role": "user", "name": "bob", "content": "hi"}) == 3 + 4 + 3 + 1 + 2
    # image parts are priced separately
    unit = {
        "role": "user",
        "content": [
            {"type": "text", "text": "look"},
            {"type": "image_url", "image_url": {"url": "data:image/png;base64,AAAA"}},
        ],
    }
    assert count_message_tokens(unit) == 3 + 4 + 4


def test_image_token_cost():
    assert image_token_cost(1024, 1024, "low") == 85
    assert image_token_cost(1024, 1024, "high") == 4 * 170 + 85
    assert image_token_cost(513, 100, "auto") == 2 * 170 + 85


def test_token_split_and_truncate():
    assert token_split("abcdefg", 3) == ["abc", "def", "g"]
    assert truncate_to_tokens("abcdefg", 4) == "abcd"
    assert truncate_to_tokens("abc", 10) == "abc"
    assert truncate_to_tokens("abc", 0) == ""


def test_truncate_middle_keeps_both_ends():
    text = "START" + "x" * 300 + "END"
    out = truncate_middle(text, 60)
    assert out.startswith("START")
    assert out.endswith("END")
    assert ELISION_MARKER in out
    assert count_tokens(out) <= 60


def test_truncate_middle_gives_up_when_marker_does_not_fit():
    assert truncate_middle("x" * 100, len(ELISION_MARKER)) == ""


def test_module_pool_is_swappable(monkeypatch, char_pool):
    assert tokens.get_pool() is char_pool
