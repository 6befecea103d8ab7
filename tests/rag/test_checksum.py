import pytest

from rag_engine.checksum import (
    compute_checksum,
    crc32_hex,
    crc64_hex,
    find_duplicate,
    is_checksum_valid,
    md5_hex,
    normalise_for_checksum,
    sha256_hex,
)

_HELLO_MD5 = "5d41402abc4b2a76b9719d911017c592"
_HELLO_SHA256 = "2cf24dba5fb0a30e26e83b2ac5b9e29e1b161e5c1fa7425e73043362938b9824"


def test_normalise_for_checksum_collapses_whitespace_and_case():
    assert normalise_for_checksum("  Hello \n\t World  ") == "hello world"
    assert normalise_for_checksum("   ") is None
    assert normalise_for_checksum(None) is None


def test_crc64_of_empty_input_is_empty_string():
    assert crc64_hex(b"") == ""


def test_crc64_output_is_unpadded_lowercase_hex():
    assert crc64_hex(b"\x00") == "0"
    assert crc64_hex(b"\x80") == "42f0e1eba9ea3693"


def test_crc64_distinguishes_inputs_and_is_deterministic():
    first = crc64_hex("mestre skywalker")

    assert first == crc64_hex(b"mestre skywalker")
    assert first != crc64_hex("mestre yoda")
    assert first == first.lower()


def test_other_digests_match_reference_values():
    assert crc32_hex("hello") == "3610a686"
    assert md5_hex("hello") == _HELLO_MD5
    assert sha256_hex("hello") == _HELLO_SHA256


def test_compute_checksum_ignores_formatting_differences():
    assert compute_checksum("Hello   World") == compute_checksum(" hello world\n")
    assert compute_checksum("Hello World") == crc64_hex("hello world")
    assert compute_checksum("") is None


@pytest.mark.parametrize(
    "checksum",
    [
        "3610a686",
        "907060870",
        _HELLO_MD5.upper(),
        _HELLO_SHA256,
        f"  {_HELLO_MD5}  ",
    ],
)
def test_is_checksum_valid_detects_algorithm_by_length(checksum):
    assert is_checksum_valid(b"hello", checksum)


def test_is_checksum_valid_accepts_crc64_digests():
    assert is_checksum_valid(b"\x80", "42f0e1eba9ea3693")
    assert not is_checksum_valid(b"\x81", "42f0e1eba9ea3693")


@pytest.mark.parametrize(
    "data,checksum",
    [
        (b"", "3610a686"),
        (None, "3610a686"),
        (b"hello", ""),
        (b"hello", None),
        (b"hello", "deadbeef"),
        (b"hello", "a" * 71),
    ],
)
def test_is_checksum_valid_rejects_mismatches(data, checksum):
    assert not is_checksum_valid(data, checksum)


def test_find_duplicate_accepts_mapping_or_pairs():
    candidates = {10: "ABC", 11: "def"}

    assert find_duplicate("abc", candidates) == 10
    assert find_duplicate("DEF", list(candidates.items())) == 11
    assert find_duplicate("zzz", candidates) is None
    assert find_duplicate(None, candidates) is None
