import pytest
from extractor import ChallengeExtractor, extract, VALUE_MIN_LEN
from transcripts import TOKEN, TOKEN2, challenge_block

MODERN_CERTBOT = """\
Saving debug log to /var/log/letsencrypt/letsencrypt.log
Simulating a certificate request for example.com

- - - - - - - - - - - - - - - - - - - - - - - - - - - - - - - - - - - - - - - -
Please deploy a DNS TXT record under the name:

_acme-challenge.example.com.

with the following value:

{token}

Before continuing, verify the TXT record has been deployed. Depending on the DNS
provider, this may take some time, from a few seconds to multiple minutes.
- - - - - - - - - - - - - - - - - - - - - - - - - - - - - - - - - - - - - - - -
Press Enter to Continue
"""


def test_extracts_single_record():
    transcript = (
        "Please deploy a DNS TXT record under the name _acme-challenge.example.com\n"
        "with the following value:\n"
        "\n"
        f"{TOKEN}\n"
    )
    records = extract(transcript, "example.com")
    assert len(records) == 1
    rec = records[0]
    assert rec.name == "_acme-challenge.example.com"
    assert rec.type == "TXT"
    assert rec.value == TOKEN
    assert rec.domain == "example.com"
    assert rec.target_domain == "example.com"


def test_name_on_following_line_with_trailing_dot():
    records = extract(MODERN_CERTBOT.format(token=TOKEN), "example.com")
    assert [(r.name, r.value) for r in records] == [("_acme-challenge.example.com", TOKEN)]


def test_value_after_colon_on_phrase_line():
    transcript = (
        "Please deploy a DNS TXT record under the name _acme-challenge.www.example.com.\n"
        f"with value: {TOKEN}\n"
    )
    records = extract(transcript, "www.example.com")
    assert records[0].value == TOKEN
    assert records[0].domain == "www.example.com"


def test_to_dict_shape():
    rec = extract(challenge_block("example.com"), "example.com")[0]
    assert rec.to_dict() == {
        "name": "_acme-challenge.example.com",
        "type": "TXT",
        "value": TOKEN,
        "domain": "example.com",
        "targetDomain": "example.com",
    }


def test_same_transcript_twice_is_idempotent():
    transcript = challenge_block("example.com")
    ex = ChallengeExtractor("example.com")
    ex.feed(transcript)
    first = len(ex.records)
    ex.feed(transcript)
    ex.close()
    assert first == 1
    assert len(ex.records) == first


def test_preserves_textual_order():
    transcript = "".join(challenge_block(f"{s}.example.com", tok)
                         for s, tok in [("sub1", TOKEN), ("sub2", TOKEN2), ("sub3", TOKEN[::-1])])
    records = extract(transcript, "example.com")
    assert [r.domain for r in records] == ["sub1.example.com", "sub2.example.com", "sub3.example.com"]


def test_wildcard_pair_shares_name_but_keeps_both_values():
    transcript = challenge_block("example.com", TOKEN) + challenge_block("example.com", TOKEN2)
    records = extract(transcript, "example.com")
    assert [r.value for r in records] == [TOKEN, TOKEN2]


def test_no_value_within_window_yields_nothing():
    transcript = (
        "Please deploy a DNS TXT record under the name _acme-challenge.example.com\n"
        "with the following value:\n"
        "\n"
        "Before continuing, verify the record is deployed.\n"
        "Press Enter to Continue\n"
    )
    assert extract(transcript, "example.com") == []


def test_value_phrase_outside_window_is_ignored():
    filler = "".join(f"line {n}\n" for n in range(14))
    transcript = (
        "Please deploy a DNS TXT record under the name _acme-challenge.example.com\n"
        + filler
        + "with the following value:\n"
        + f"{TOKEN}\n"
    )
    assert extract(transcript, "example.com") == []


@pytest.mark.parametrize("length,expected", [(VALUE_MIN_LEN, 0), (VALUE_MIN_LEN + 1, 1)])
def test_minimum_value_length(length, expected):
    value = "a" * length
    transcript = (
        "Please deploy a DNS TXT record under the name _acme-challenge.example.com\n"
        "with the following value:\n"
        f"{value}\n"
    )
    assert len(extract(transcript, "example.com")) == expected


def test_structural_lines_are_not_taken_as_value():
    transcript = (
        "Please deploy a DNS TXT record under the name _acme-challenge.example.com\n"
        "with the following value:\n"
        "_acme-challenge_example_com_placeholder\n"
        "short\n"
        f"{TOKEN}\n"
    )
    records = extract(transcript, "example.com")
    assert records[0].value == TOKEN


def test_name_and_value_split_across_chunks():
    ex = ChallengeExtractor("example.com")
    ex.feed("Please deploy a DNS TXT record under the name _acme-challenge.exa")
    ex.feed("mple.com\nwith the following value:\n\n")
    assert ex.records == []
    ex.feed(TOKEN[:10])
    assert ex.records == []        # token not terminated yet
    ex.feed(TOKEN[10:] + "\n")
    assert [(r.name, r.value) for r in ex.records] == [("_acme-challenge.example.com", TOKEN)]


def test_close_flushes_unterminated_tail():
    ex = ChallengeExtractor("example.com")
    ex.feed("Please deploy a DNS TXT record under the name _acme-challenge.example.com\n"
            "with the following value:\n" + TOKEN)
    assert ex.records == []
    added = ex.close()
    assert [r.value for r in added] == [TOKEN]


def test_block_without_value_does_not_borrow_next_blocks_token():
    transcript = (
        "Please deploy a DNS TXT record under the name _acme-challenge.sub1.example.com\n"
        "Press Enter to Continue\n"
        + challenge_block("sub2.example.com")
    )
    records = extract(transcript, "example.com")
    assert [(r.name, r.value) for r in records] == [("_acme-challenge.sub2.example.com", TOKEN)]
