import os
import stat
import sys
import textwrap
import pytest

# Add project root to path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from adapters.certbot import Certbot  # noqa: E402

@pytest.fixture
def fake_bin(tmp_path):
    """Write an executable Python script standing in for an external tool."""
    def _make(name: str, body: str) -> str:
        path = tmp_path / name
        path.write_text(f"#!{sys.executable}\n" + textwrap.dedent(body))
        path.chmod(path.stat().st_mode | stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH)
        return str(path)
    return _make


@pytest.fixture
def fake_certbot(fake_bin, tmp_path):
    """
    certbot stand-in: records its argv, prints `stdout`, then runs `tail`
    (python source) and exits with `rc`.
    """
    def _make(stdout: str = "", tail: str = "", rc: int = 0) -> str:
        argv_file = tmp_path / "argv.txt"
        body = f"""
        import sys, time
        open({str(argv_file)!r}, "w").write("\\n".join(sys.argv[1:]))
        sys.stdout.write({stdout!r})
        sys.stdout.flush()
        {tail}
        sys.exit({rc})
        """
        return fake_bin("certbot", body)
    return _make


@pytest.fixture
def certbot_for(tmp_path):
    def _make(binary: str) -> Certbot:
        return Certbot(binary=binary, live_dir=str(tmp_path / "live"),
                       lock_file=str(tmp_path / ".certbot.lock"),
                       tmp_glob=str(tmp_path / "certbot-*"),
                       cleanup_enabled=False, cleanup_pause=0)
    return _make
