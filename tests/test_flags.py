import logging
import threading
from datetime import timedelta

import pytest

from arena import db
from arena.ctf import flags
from arena.ctf.flags import FlagValidator, flag_matches, hex_digest, secure_equals
from arena.models import Challenge, Outcome, SecretEncoding


@pytest.fixture
def validator(clock):
    return FlagValidator(window=timedelta(seconds=60), max_submissions=3, clock=clock)


def test_secure_equals():
    assert secure_equals("FLAG{abc}", "FLAG{abc}")
    assert not secure_equals("FLAG{abc}", "FLAG{abd}")
    assert not secure_equals("FLAG{abc}", "FLAG{abc}x")
    assert not secure_equals("FLAG{abc}", "")


def test_secure_equals_scans_full_input(monkeypatch):
    calls = []

    def spy(a, b):
        calls.append((a, b))
        return a == b

    monkeypatch.setattr(flags.hmac, "compare_digest", spy)

    # Differ only in the last byte
    assert not secure_equals("FLAG{abcdef}", "FLAG{abcdeg}")
    assert calls == [(b"FLAG{abcdef}", b"FLAG{abcdeg}")]


def test_secure_equals_length_mismatch_skips_content(monkeypatch):
    calls = []
    monkeypatch.setattr(flags.hmac, "compare_digest", lambda a, b: calls.append(1))
    assert not secure_equals("FLAG{abc}", "FLAG{ab}")
    assert calls == []


def test_hex_digest():
    assert hex_digest("FLAG{hashed}", "md5") == "3be5631f901768a675b1e4c9ede8dc33"
    assert (
        hex_digest("FLAG{hashed}", "sha256")
        == "c5545e7d02a10945609c671a60f7970ac51b6636d2521fda122936c637466a38"
    )


def test_flag_matches_plain():
    challenge = db.get_challenge("web-login")
    assert flag_matches(challenge, "FLAG{sql_injection_master}")
    assert not flag_matches(challenge, "FLAG{sql_injection_mastex}")
    assert not flag_matches(challenge, "flag{sql_injection_master}")
    assert not flag_matches(challenge, "")


def test_flag_matches_hashed():
    md5 = db.get_challenge("crypto-md5")
    assert flag_matches(md5, "FLAG{hashed}")
    assert not flag_matches(md5, "FLAG{other}")

    sha = Challenge(
        id="sha",
        title="Sha",
        expected_secret="C5545E7D02A10945609C671A60F7970AC51B6636D2521FDA122936C637466A38",
        secret_encoding=SecretEncoding.SHA256,
    )
    assert flag_matches(sha, "FLAG{hashed}")


def test_flag_matches_regex():
    challenge = db.get_challenge("regex-flag")
    assert flag_matches(challenge, "FLAG{level_42}")
    assert not flag_matches(challenge, "FLAG{Level_42}")
    assert not flag_matches(challenge, "xFLAG{level_42}")


def test_flag_matches_invalid_regex():
    challenge = Challenge(
        id="broken", title="Broken", expected_secret="FLAG{(", secret_encoding=SecretEncoding.REGEX
    )
    assert not flag_matches(challenge, "FLAG{(")


def test_validate_correct(validator, make_user):
    uid = make_user()
    result = validator.validate("web-login", uid, "FLAG{sql_injection_master}", "10.0.0.1")
    assert result.outcome == Outcome.CORRECT
    assert result.submission.is_correct
    assert result.challenge.id == "web-login"

    [sub] = db.get_submissions(challenge_id="web-login", user_id=uid)
    assert sub.is_correct
    assert sub.origin_ip == "10.0.0.1"


def test_validate_incorrect_is_recorded(validator, make_user):
    uid = make_user()
    result = validator.validate("web-login", uid, "FLAG{guess}")
    assert result.outcome == Outcome.INCORRECT
    [sub] = db.get_submissions(user_id=uid)
    assert not sub.is_correct
    assert sub.submitted_value == "FLAG{guess}"


def test_validate_already_solved_is_idempotent(validator, clock, make_user):
    uid = make_user()
    assert validator.validate("web-login", uid, "FLAG{sql_injection_master}").outcome == Outcome.CORRECT

    clock.advance(seconds=61)
    assert validator.validate("web-login", uid, "FLAG{sql_injection_master}").outcome == Outcome.ALREADY_SOLVED
    assert validator.validate("web-login", uid, "FLAG{wrong}").outcome == Outcome.ALREADY_SOLVED
    assert len(db.get_submissions(user_id=uid)) == 1


def test_validate_unknown_or_inactive_challenge(validator, make_user):
    uid = make_user()
    assert validator.validate("nope", uid, "FLAG{x}").outcome == Outcome.CHALLENGE_NOT_FOUND
    assert validator.validate("retired", uid, "FLAG{old}").outcome == Outcome.CHALLENGE_NOT_FOUND
    assert db.get_submissions(user_id=uid) == []


def test_rate_limit(validator, clock, make_user):
    uid = make_user()
    for _ in range(3):
        assert validator.validate("web-login", uid, "FLAG{guess}").outcome == Outcome.INCORRECT
        clock.advance(seconds=5)

    result = validator.validate("web-login", uid, "FLAG{sql_injection_master}")
    assert result.outcome == Outcome.RATE_LIMITED
    # Oldest attempt leaves the window 60s after it was made
    assert result.retry_after == 45
    assert len(db.get_submissions(user_id=uid)) == 3

    clock.advance(seconds=46)
    assert validator.validate("web-login", uid, "FLAG{sql_injection_master}").outcome == Outcome.CORRECT


def test_rate_limit_spans_challenges(validator, make_user):
    uid = make_user()
    validator.validate("web-login", uid, "a")
    validator.validate("crypto-md5", uid, "b")
    validator.validate("regex-flag", uid, "c")
    assert validator.validate("web-login", uid, "d").outcome == Outcome.RATE_LIMITED


def test_rate_limit_is_per_user(validator, make_user):
    alice, bob = make_user("alice"), make_user("bob")
    for _ in range(3):
        validator.validate("web-login", alice, "wrong")
    assert validator.validate("web-login", alice, "wrong").outcome == Outcome.RATE_LIMITED
    assert validator.validate("web-login", bob, "wrong").outcome == Outcome.INCORRECT


def test_concurrent_submits_share_rate_limit(validator, clock, make_user, monkeypatch):
    uid = make_user()
    db.insert_submission("web-login", uid, "a", False, clock())
    db.insert_submission("crypto-md5", uid, "b", False, clock())
    barrier = threading.Barrier(2, timeout=0.5)
    real_count = db.recent_submission_times

    def count_then_wait(user_id, since):
        times = real_count(user_id, since)
        # Let the other thread count before either records its attempt
        try:
            barrier.wait()
        except threading.BrokenBarrierError:
            pass
        return times

    monkeypatch.setattr(db, "recent_submission_times", count_then_wait)
    results = {}

    def submit(challenge_id):
        results[challenge_id] = validator.validate(challenge_id, uid, "wrong").outcome

    threads = [threading.Thread(target=submit, args=(cid,)) for cid in ("web-login", "regex-flag")]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert sorted(o.value for o in results.values()) == ["incorrect", "rate_limited"]
    assert len(db.get_submissions(user_id=uid)) == 3


def test_rate_limit_holds_under_concurrent_load(validator, make_user):
    uid = make_user()
    challenges = ["web-login", "crypto-md5", "regex-flag"] * 4
    barrier = threading.Barrier(len(challenges))
    outcomes = []

    def submit(challenge_id):
        barrier.wait()
        outcomes.append(validator.validate(challenge_id, uid, "wrong").outcome)

    threads = [threading.Thread(target=submit, args=(cid,)) for cid in challenges]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert outcomes.count(Outcome.INCORRECT) == 3
    assert outcomes.count(Outcome.RATE_LIMITED) == len(challenges) - 3
    assert len(db.get_submissions(user_id=uid)) == 3


def test_overlong_candidate_is_incorrect(clock, make_user):
    uid = make_user()
    validator = FlagValidator(max_flag_length=16, clock=clock)
    result = validator.validate("web-login", uid, "FLAG{sql_injection_master}")
    assert result.outcome == Outcome.INCORRECT
    assert len(result.submission.submitted_value) == 16


def test_flag_values_not_logged(validator, make_user, caplog):
    uid = make_user()
    with caplog.at_level(logging.DEBUG):
        validator.validate("web-login", uid, "FLAG{guess_one}")
        validator.validate("web-login", uid, "FLAG{sql_injection_master}")
    assert "FLAG{guess_one}" not in caplog.text
    assert "sql_injection_master" not in caplog.text

    events = db.get_events(user_id=uid)
    assert {e["event_type"] for e in events} == {
        "FLAG_SUBMISSION_CORRECT",
        "FLAG_SUBMISSION_INCORRECT",
    }
    assert all("FLAG{" not in (e["details"] or "") for e in events)
