import pytest

from reviewrank.matching import text


def test_normalize_name_strips_punctuation_and_legal_suffixes():
    assert text.normalize_name("Joe's Roofing, L.L.C.") == "joes roofing"
    assert text.normalize_name("  ACME   Plumbing & Heating Inc ") == "acme plumbing heating"
    assert text.normalize_name(None) == ""


def test_normalize_phone_keeps_digits_only():
    assert text.normalize_phone("(555) 123-4567") == "5551234567"
    assert text.normalize_phone("") == ""


def test_normalize_text_collapses_whitespace():
    assert text.normalize_text("Great   service!!  Would hire again.") == "great service would hire again"


def test_similarity_is_normalised_levenshtein():
    assert text.similarity("kitten", "sitting") == pytest.approx(4 / 7)
    assert text.similarity("same", "same") == 1.0
    assert text.similarity("", "") == 1.0
    assert text.similarity("abc", "") == 0.0


def test_could_reach_prunes_by_length_difference():
    assert text.could_reach("abc", "abcdefghij", 0.85) is False
    assert text.could_reach("acme roofing", "acme roofin", 0.85) is True


def test_name_block_keys():
    assert text.name_block_keys("joes roofing co") == {
        "p:joe",
        "t:joes",
        "t:roofing",
        "g:joe",
        "g:oes",
        "g:roo",
        "g:oof",
        "g:ofi",
        "g:fin",
        "g:ing",
    }
    assert text.name_block_keys("") == set()


def test_legal_suffixes_only_stripped_at_the_end():
    assert text.normalize_name("Co-Op Cleaning") == "co op cleaning"
    assert text.normalize_name("Limited Edition Painters") == "limited edition painters"
    assert text.normalize_name("Acme Roofing Co. Inc.") == "acme roofing"
    assert text.normalize_name("Company") == "company"


def test_block_keys_share_a_trigram_across_a_typo():
    typo = text.name_block_keys(text.normalize_name("Plimbmasters"))
    listed = text.name_block_keys(text.normalize_name("Plumbmasters LLC"))

    shared = typo & listed
    assert all(key.startswith("g:") for key in shared)
    assert {"g:mbm", "g:ers"} <= shared
