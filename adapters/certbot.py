# adapters/certbot.py
import asyncio
import codecs
import enum
import glob
import logging
import os
import re
import shlex
import shutil
import subprocess
from dataclasses import dataclass
from typing import Callable, List, Optional

logger = logging.getLogger(__name__)

PROMPT_RE = re.compile(r"press enter to continue", re.I)
EMAIL_RE = re.compile(r"[a-zA-Z0-9._%+-]+@[a-zA-Z0-9.-]+\.[a-zA-Z]{2,}")


class RunState(str, enum.Enum):
    COMPLETED = "completed"
    TIMED_OUT = "timed_out"
    SPAWN_FAILED = "spawn_failed"
    STOPPED = "stopped"        # caller asked to abort at a prompt


@dataclass
class RunResult:
    state: RunState
    returncode: Optional[int] = None
    stdout: str = ""
    stderr: str = ""
    error: str = ""


class Certbot:
    """
    certbot CLI adapter.

    Builds argv lists, performs the best-effort pre-flight cleanup and
    supervises a single certbot child with a hard wall-clock timeout.
    Honors:
      - binary / use_sudo (sudo -n, never prompts for a password)
      - directory_url   (--server)
      - live_dir        (where certbot stores live certificates)
    """
    def __init__(self, binary: str = "certbot", use_sudo: bool = False,
                 directory_url: str = "https://acme-v02.api.letsencrypt.org/directory",
                 live_dir: str = "/etc/letsencrypt/live",
                 lock_file: str = "/var/lib/letsencrypt/.certbot.lock",
                 tmp_glob: str = "/tmp/certbot-*",
                 cleanup_enabled: bool = True, cleanup_pause: float = 2.0,
                 cleanup_timeout: float = 5.0):
        self.binary = binary
        self.use_sudo = use_sudo
        self.directory_url = directory_url
        self.live_dir = live_dir.rstrip("/")
        self.lock_file = lock_file
        self.tmp_glob = tmp_glob
        self.cleanup_enabled = cleanup_enabled
        self.cleanup_pause = cleanup_pause
        self.cleanup_timeout = cleanup_timeout

    # ------------------ argv ------------------
    def _cmd(self, *args: str) -> List[str]:
        argv = [self.binary, *args]
        if self.use_sudo:
            argv = ["sudo", "-n", *argv]
        return argv

    def certonly_args(self, email: str, cert_name: str, domains: List[str],
                      dry_run: bool = True, force_renewal: bool = False) -> List[str]:
        args = ["certonly", "--manual", "--preferred-challenges", "dns"]
        if dry_run:
            args.append("--dry-run")
        args += ["--agree-tos", "--email", email,
                 "--server", self.directory_url,
                 "--cert-name", cert_name]
        if force_renewal:
            args.append("--force-renewal")
        for d in domains:
            args += ["-d", d]
        return self._cmd(*args)

    def manual_command(self, email: str, cert_name: str, domains: List[str]) -> str:
        """Real-run command line a user can paste into a root shell on the server."""
        argv = ["sudo", self.binary, "certonly", "--manual", "--preferred-challenges", "dns",
                "--email", email]
        for d in domains:
            argv += ["-d", d]
        argv += ["--agree-tos", "--cert-name", cert_name]
        return " ".join(shlex.quote(a) for a in argv)

    def cert_dir(self, cert_name: str) -> str:
        return f"{self.live_dir}/{cert_name}"

    def available(self) -> bool:
        return shutil.which(self.binary) is not None

    def pkill_pattern(self) -> str:
        # bracketed first char keeps the pattern from matching its own sudo/pkill argv
        name = os.path.basename(self.binary)
        return f"[{name[0]}]{name[1:]} certonly"

    # ------------------ pre-flight cleanup ------------------
    async def cleanup(self):
        """Kill stale certbot runs and drop its lock/temp files. Never raises."""
        if not self.cleanup_enabled:
            return
        try:
            pk = await asyncio.create_subprocess_exec(
                *(["sudo", "-n"] if self.use_sudo else []),
                "pkill", "-f", self.pkill_pattern(),
                stdout=asyncio.subprocess.DEVNULL, stderr=asyncio.subprocess.DEVNULL)
            try:
                await asyncio.wait_for(pk.wait(), self.cleanup_timeout)
            except asyncio.TimeoutError:
                pk.kill()
                logger.warning("Cleanup warning: pkill did not finish in %ss", self.cleanup_timeout)
        except OSError as e:
            logger.warning("Cleanup warning: could not run pkill: %s", e)

        for path in [self.lock_file, *glob.glob(self.tmp_glob)]:
            try:
                if os.path.isdir(path):
                    shutil.rmtree(path)
                elif os.path.exists(path):
                    os.remove(path)
            except OSError as e:
                logger.warning("Cleanup warning: could not remove %s: %s", path, e)

        if self.cleanup_pause > 0:
            await asyncio.sleep(self.cleanup_pause)

    # ------------------ supervised run ------------------
    async def run(self, argv: List[str], timeout: float,
                  on_stdout: Optional[Callable[[str], None]] = None,
                  on_prompt: Optional[Callable[[], bool]] = None) -> RunResult:
        """
        Spawn argv and wait for exit or timeout, whichever comes first.

        stdout is decoded incrementally and handed to on_stdout in arrival
        order; stderr is only collected. At every "Press Enter to Continue"
        prompt on_prompt decides: True sends a newline, False stops the child.
        Without on_prompt the child is left waiting on stdin.
        """
        cmd_for_log = " ".join(shlex.quote(a) for a in argv)
        logger.info("Running: %s", cmd_for_log)
        try:
            proc = await asyncio.create_subprocess_exec(
                *argv,
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except (OSError, ValueError) as e:
            logger.error("Could not start %s: %s", argv[0], e)
            return RunResult(RunState.SPAWN_FAILED, error=str(e))

        out_parts: List[str] = []
        err_parts: List[str] = []
        stopped = False
        pending = ""

        def _stdout(text: str):
            nonlocal stopped, pending
            out_parts.append(text)
            logger.debug("certbot stdout: %s", text)
            if on_stdout:
                on_stdout(text)
            if on_prompt is None or stopped:
                return
            pending += text
            while PROMPT_RE.search(pending):
                pending = PROMPT_RE.split(pending, 1)[1]
                if on_prompt():
                    if proc.stdin and not proc.stdin.is_closing():
                        proc.stdin.write(b"\n")
                else:
                    stopped = True
                    _terminate(proc)
                    return

        def _stderr(text: str):
            err_parts.append(text)
            logger.debug("certbot stderr: %s", text)

        async def _supervise():
            await asyncio.gather(_pump(proc.stdout, _stdout), _pump(proc.stderr, _stderr))
            return await proc.wait()

        try:
            rc = await asyncio.wait_for(_supervise(), timeout)
            state = RunState.STOPPED if stopped else RunState.COMPLETED
        except asyncio.TimeoutError:
            logger.warning("certbot timed out after %ss, terminating", timeout)
            _terminate(proc)
            try:
                rc = await asyncio.wait_for(proc.wait(), 5)
            except asyncio.TimeoutError:
                proc.kill()
                rc = await proc.wait()
            state = RunState.TIMED_OUT

        logger.info("certbot finished: state=%s rc=%s", state.value, rc)
        return RunResult(state, rc, "".join(out_parts), "".join(err_parts))

    # ------------------ read-only helpers ------------------
    def account_email(self) -> Optional[str]:
        try:
            out = run_cmd(self._cmd("show_account"), timeout=15)
        except (RuntimeError, OSError, ValueError) as e:
            logger.info("Could not read certbot account email: %s", e)
            return None
        m = EMAIL_RE.search(out)
        return m.group(0) if m else None

    def list_certificates(self) -> List[dict]:
        out = run_cmd(self._cmd("certificates"), timeout=30)
        return parse_certificates(out)


def parse_certificates(text: str) -> List[dict]:
    """Scrape the 'certbot certificates' listing."""
    items, cur = [], None
    for line in text.splitlines():
        if "Certificate Name:" in line:
            if cur:
                items.append(cur)
            cur = {"name": line.split("Certificate Name:", 1)[1].strip(),
                   "domains": [], "expiry": None, "path": None}
        elif cur is None:
            continue
        elif "Domains:" in line:
            cur["domains"] = line.split("Domains:", 1)[1].split()
        elif "Expiry Date:" in line:
            cur["expiry"] = line.split("Expiry Date:", 1)[1].strip()
        elif "Certificate Path:" in line:
            cur["path"] = line.split("Certificate Path:", 1)[1].strip()
    if cur:
        items.append(cur)
    return items


# ------------------ module-level helpers ------------------
async def _pump(stream, sink: Callable[[str], None]):
    decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
    while True:
        chunk = await stream.read(4096)
        if not chunk:
            tail = decoder.decode(b"", final=True)
            if tail:
                sink(tail)
            return
        text = decoder.decode(chunk)
        if text:
            sink(text)


def _terminate(proc):
    try:
        proc.terminate()
    except ProcessLookupError:
        pass


def run_cmd(args: List[str], timeout: float = 30) -> str:
    cmd = " ".join(shlex.quote(a) for a in args)
    try:
        p = subprocess.run(args, capture_output=True, text=True, shell=False, timeout=timeout)
    except subprocess.TimeoutExpired as e:
        raise RuntimeError(f"cmd timed out after {timeout}s:\n{cmd}") from e
    if p.returncode != 0:
        raise RuntimeError(f"cmd failed:\n{cmd}\n--- stdout ---\n{p.stdout}\n--- stderr ---\n{p.stderr}")
    return p.stdout
