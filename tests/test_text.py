from localrag.text import clean_text, extract_urls, hash_text, normalize_query, remove_stop_words, truncate_text


def test_clean_text_normalises_quotes_and_whitespace():
    raw = "“Smart”  quotes and\ttabs \r\n\n\n\n  next\x07 line "
    assert clean_text(raw) == '"Smart" quotes and tabs\n\nnext line'


def test_clean_text_keeps_single_paragraph_breaks():
    assert clean_text("one\n\ntwo\nthree") == "one\n\ntwo\nthree"


def test_normalize_query():
    assert normalize_query("  What's   the STATE-of-the-art?! ") == "what's the state-of-the-art"
    assert normalize_query("Hello, World.") == normalize_query("hello world")


def test_remove_stop_words():
    assert remove_stop_words("What is the role of the cell") == "what role cell"


def test_extract_urls():
    text = "Docs at https://example.org/guide and http://a.test/x?y=1 plus <https://b.test>"
    assert extract_urls(text) == ["https://example.org/guide", "http://a.test/x?y=1", "https://b.test"]


def test_truncate_text():
    assert truncate_text("short", 10) == "short"
    assert truncate_text("abcdefghijkl", 8) == "abcde..."


def test_hash_text_is_stable_sha256():
    digest = hash_text("content")
    assert digest == hash_text("content")
    assert digest != hash_text("content ")
    assert len(digest) == 64
