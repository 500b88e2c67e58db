# extractor.py
import re
from dataclasses import dataclass
from typing import List, Optional

INSTRUCTION = "Please deploy a DNS TXT record under the name"
VALUE_PHRASES = ("with the following value", "with value")
VALUE_GUARDS = ("_acme-challenge", "Before continuing")

NAME_RE = re.compile(r"_acme-challenge\.[a-zA-Z0-9.\-]+")
VALUE_RE = re.compile(r"^[A-Za-z0-9_\-]+$")

# certbot tokens are 43 chars (base64url SHA-256); anything <= 20 is prose.
VALUE_MIN_LEN = 20
NAME_WINDOW = 15
VALUE_WINDOW = 5


@dataclass(frozen=True)
class ChallengeRecord:
    name: str
    value: str
    domain: str
    target_domain: str
    type: str = "TXT"

    def to_dict(self) -> dict:
        return {"name": self.name, "type": self.type, "value": self.value,
                "domain": self.domain, "targetDomain": self.target_domain}


def _looks_like_value(s: str) -> bool:
    return len(s) > VALUE_MIN_LEN and bool(VALUE_RE.match(s))


def _name_from(line: str) -> str:
    m = NAME_RE.search(line)
    if not m:
        return ""
    return m.group(0).rstrip(":., \t")


def _value_after(lines: List[str], j: int) -> str:
    """Value on the phrase line itself (after the last colon) or a few lines below it."""
    parts = lines[j].split(":")
    if len(parts) > 1:
        candidate = parts[-1].strip()
        if _looks_like_value(candidate):
            return candidate
    for k in range(j + 1, min(j + VALUE_WINDOW, len(lines))):
        s = lines[k]
        if _looks_like_value(s) and not any(g in s for g in VALUE_GUARDS):
            return s
    return ""


def scan(lines: List[str], target_domain: str) -> List[ChallengeRecord]:
    """Pure pass over already-stripped lines; returns records in textual order (with repeats)."""
    found: List[ChallengeRecord] = []
    for i, line in enumerate(lines):
        if INSTRUCTION not in line:
            continue
        name = _name_from(line)
        value = ""
        for j in range(i + 1, min(i + NAME_WINDOW, len(lines))):
            nxt = lines[j]
            if INSTRUCTION in nxt:
                break
            if any(p in nxt for p in VALUE_PHRASES):
                value = _value_after(lines, j)
                break
            if not name and "_acme-challenge." in nxt:
                name = _name_from(nxt)
        if name and value:
            found.append(ChallengeRecord(
                name=name,
                value=value,
                domain=name.replace("_acme-challenge.", "", 1),
                target_domain=target_domain,
            ))
    return found


class ChallengeExtractor:
    """
    Incremental scraper for certbot's manual DNS instructions.

    Chunks are appended to one buffer and the complete lines are rescanned on
    every feed, so a name and its value may arrive in different chunks. The
    unterminated tail is held back until close() so a half-written token is
    never mistaken for a value.
    """

    def __init__(self, target_domain: str):
        self.target_domain = target_domain
        self.records: List[ChallengeRecord] = []
        self._buf = ""

    def feed(self, chunk: str) -> List[ChallengeRecord]:
        self._buf += chunk
        cut = self._buf.rfind("\n")
        if cut < 0:
            return []
        return self._absorb(self._buf[:cut])

    def close(self) -> List[ChallengeRecord]:
        return self._absorb(self._buf)

    @property
    def output(self) -> str:
        return self._buf

    def _absorb(self, text: str) -> List[ChallengeRecord]:
        lines = [ln.strip() for ln in text.split("\n")]
        added = []
        for rec in scan(lines, self.target_domain):
            if self.find(rec.name, rec.value) is None:
                self.records.append(rec)
                added.append(rec)
        return added

    def find(self, name: str, value: str) -> Optional[ChallengeRecord]:
        for r in self.records:
            if r.name == name and r.value == value:
                return r
        return None


def extract(text: str, target_domain: str) -> List[ChallengeRecord]:
    ex = ChallengeExtractor(target_domain)
    ex.feed(text)
    ex.close()
    return ex.records
