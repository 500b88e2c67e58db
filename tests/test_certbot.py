import asyncio
import re
import time

from adapters.certbot import Certbot, RunState, parse_certificates
from transcripts import TOKEN, TOKEN2, challenge_block


def _domain_flags(argv):
    return [argv[i + 1] for i, a in enumerate(argv) if a == "-d"]


def test_certonly_args_dry_run_with_wildcard():
    cb = Certbot(binary="certbot", directory_url="https://acme.test/directory")
    argv = cb.certonly_args("admin@example.com", "example.com", ["example.com", "*.example.com"])
    assert argv[:5] == ["certbot", "certonly", "--manual", "--preferred-challenges", "dns"]
    assert "--dry-run" in argv
    assert "--agree-tos" in argv
    assert argv[argv.index("--email") + 1] == "admin@example.com"
    assert argv[argv.index("--server") + 1] == "https://acme.test/directory"
    assert "*" not in argv[argv.index("--cert-name") + 1]
    assert _domain_flags(argv) == ["example.com", "*.example.com"]


def test_certonly_args_real_run_and_sudo():
    cb = Certbot(binary="certbot", use_sudo=True)
    argv = cb.certonly_args("a@b.io", "b.io", ["b.io"], dry_run=False, force_renewal=True)
    assert argv[:3] == ["sudo", "-n", "certbot"]
    assert "--dry-run" not in argv
    assert "--force-renewal" in argv


def test_manual_command_quotes_wildcard_and_omits_dry_run():
    cb = Certbot(binary="certbot")
    cmd = cb.manual_command("admin@example.com", "example.com", ["example.com", "*.example.com"])
    assert cmd.startswith("sudo certbot certonly --manual --preferred-challenges dns")
    assert "-d '*.example.com'" in cmd
    assert "--dry-run" not in cmd


def test_run_streams_stdout_in_order(fake_certbot, certbot_for):
    binary = fake_certbot(stdout="one\ntwo\nthree\n", tail="sys.stderr.write('warn\\n')", rc=3)
    chunks = []
    res = asyncio.run(certbot_for(binary).run([binary], timeout=10, on_stdout=chunks.append))
    assert res.state == RunState.COMPLETED
    assert res.returncode == 3
    assert "".join(chunks) == "one\ntwo\nthree\n"
    assert res.stdout == "one\ntwo\nthree\n"
    assert res.stderr == "warn\n"


def test_run_times_out_and_terminates(fake_certbot, certbot_for):
    binary = fake_certbot(stdout=challenge_block("example.com"), tail="time.sleep(30)")
    started = time.monotonic()
    res = asyncio.run(certbot_for(binary).run([binary], timeout=1))
    assert res.state == RunState.TIMED_OUT
    assert time.monotonic() - started < 10
    assert TOKEN in res.stdout


def test_run_spawn_failure(tmp_path, certbot_for):
    missing = str(tmp_path / "no-such-certbot")
    res = asyncio.run(certbot_for(missing).run([missing], timeout=5))
    assert res.state == RunState.SPAWN_FAILED
    assert res.error


def test_run_answers_prompts(fake_certbot, certbot_for):
    tail = ("sys.stdin.readline(); "
            f"sys.stdout.write({challenge_block('example.com', TOKEN2)!r} + 'Press Enter to Continue'); "
            "sys.stdout.flush(); sys.stdin.readline()")
    binary = fake_certbot(stdout=challenge_block("example.com") + "Press Enter to Continue", tail=tail)
    prompts = []

    def on_prompt():
        prompts.append(1)
        return True

    res = asyncio.run(certbot_for(binary).run([binary], timeout=10, on_prompt=on_prompt))
    assert res.state == RunState.COMPLETED
    assert len(prompts) == 2
    assert TOKEN2 in res.stdout


def test_run_stops_when_prompt_declined(fake_certbot, certbot_for):
    binary = fake_certbot(stdout=challenge_block("example.com") + "Press Enter to Continue",
                          tail="sys.stdin.readline(); time.sleep(30)")
    res = asyncio.run(certbot_for(binary).run([binary], timeout=10, on_prompt=lambda: False))
    assert res.state == RunState.STOPPED


def test_cleanup_removes_lock_and_temp_dirs(tmp_path):
    lock = tmp_path / ".certbot.lock"
    lock.write_text("")
    stale = tmp_path / "certbot-abc"
    stale.mkdir()
    (stale / "x").write_text("")
    cb = Certbot(binary="certbot-test-no-such-process", lock_file=str(lock),
                 tmp_glob=str(tmp_path / "certbot-*"), cleanup_pause=0)
    asyncio.run(cb.cleanup())
    assert not lock.exists()
    assert not stale.exists()


def test_cleanup_never_raises(tmp_path):
    cb = Certbot(binary="certbot-test-no-such-process",
                 lock_file=str(tmp_path / "missing" / ".certbot.lock"),
                 tmp_glob=str(tmp_path / "nothing-*"), cleanup_pause=0)
    asyncio.run(cb.cleanup())


def test_cleanup_disabled_is_a_noop(tmp_path):
    lock = tmp_path / ".certbot.lock"
    lock.write_text("")
    cb = Certbot(lock_file=str(lock), cleanup_enabled=False)
    asyncio.run(cb.cleanup())
    assert lock.exists()


def test_parse_certificates_listing():
    listing = """\
Found the following certs:
  Certificate Name: example.com
    Serial Number: 4a1b
    Key Type: ECDSA
    Domains: example.com *.example.com
    Expiry Date: 2026-12-01 10:00:00+00:00 (VALID: 42 days)
    Certificate Path: /etc/letsencrypt/live/example.com/fullchain.pem
  Certificate Name: other.org
    Domains: other.org
    Expiry Date: 2026-11-02 10:00:00+00:00 (VALID: 13 days)
    Certificate Path: /etc/letsencrypt/live/other.org/fullchain.pem
"""
    certs = parse_certificates(listing)
    assert [c["name"] for c in certs] == ["example.com", "other.org"]
    assert certs[0]["domains"] == ["example.com", "*.example.com"]
    assert certs[1]["path"] == "/etc/letsencrypt/live/other.org/fullchain.pem"


def test_account_email_from_show_account(fake_bin):
    binary = fake_bin("certbot", """
    import sys
    print("Account details for server https://acme-v02.api.letsencrypt.org/directory:")
    print("  Account URL: https://acme-v02.api.letsencrypt.org/acme/acct/1")
    print("  Email contact: ops@example.com")
    """)
    assert Certbot(binary=binary).account_email() == "ops@example.com"


def test_account_email_missing_binary(tmp_path):
    assert Certbot(binary=str(tmp_path / "nope")).account_email() is None


def test_run_argument_with_nul_is_a_spawn_failure(fake_certbot, certbot_for):
    binary = fake_certbot()
    res = asyncio.run(certbot_for(binary).run([binary, "--email", "a\x00b@example.com"], timeout=5))
    assert res.state == RunState.SPAWN_FAILED
    assert "null" in res.error


def test_pkill_pattern_does_not_match_itself():
    cb = Certbot(binary="/usr/bin/certbot", use_sudo=True)
    pattern = cb.pkill_pattern()
    assert pattern == "[c]ertbot certonly"
    assert not re.search(pattern, " ".join(["sudo", "-n", "pkill", "-f", pattern]))
    assert re.search(pattern, "/usr/bin/python3 /usr/bin/certbot certonly --manual")
