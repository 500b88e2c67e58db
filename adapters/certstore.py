# adapters/certstore.py
import logging
import os
import re
from datetime import datetime, timezone
from typing import Dict, Optional

from adapters.certbot import run_cmd

logger = logging.getLogger(__name__)

PEM_FILES = ("cert", "privkey", "chain", "fullchain")


class CertStore:
    """Read-only view of certbot's live directory (<live_dir>/<cert_name>/*.pem)."""

    def __init__(self, live_dir: str = "/etc/letsencrypt/live", openssl: str = "openssl"):
        self.live_dir = live_dir.rstrip("/")
        self.openssl = openssl

    def path_for(self, cert_name: str) -> str:
        return f"{self.live_dir}/{cert_name}"

    def files(self, cert_name: str) -> Dict[str, str]:
        base = self.path_for(cert_name)
        return {k: f"{base}/{k}.pem" for k in PEM_FILES}

    def has_all(self, cert_name: str) -> bool:
        return all(os.path.exists(p) for p in self.files(cert_name).values())

    def read_bundle(self, cert_name: str, include_key: bool = False) -> Dict[str, str]:
        out = {}
        for key, path in self.files(cert_name).items():
            if key == "privkey" and not include_key:
                continue
            if not os.path.exists(path):
                logger.warning("Certificate file not found: %s", path)
                continue
            with open(path, "r", encoding="utf-8") as f:
                out[key] = f.read()
            logger.info("Read %s (%d characters)", key, len(out[key]))
        return out

    def inspect(self, cert_name: str) -> Dict:
        """Parse `openssl x509 -text` for the leaf certificate; raises RuntimeError if openssl fails."""
        cert_pem = self.files(cert_name)["cert"]
        text = run_cmd([self.openssl, "x509", "-in", cert_pem, "-noout", "-text"])
        info = parse_x509_text(text)
        info["certName"] = cert_name
        info["certPath"] = self.path_for(cert_name)
        info["lastModified"] = datetime.fromtimestamp(
            os.path.getmtime(cert_pem), tz=timezone.utc).isoformat()
        return info


def parse_x509_text(text: str, now: Optional[datetime] = None) -> Dict:
    def _grab(pattern: str) -> Optional[str]:
        m = re.search(pattern, text)
        return m.group(1).strip() if m else None

    not_after = _grab(r"Not After\s*:\s*(.+)")
    san = _grab(r"(DNS:[^\n]+)")
    info = {
        "domain": _grab(r"Subject:.*CN\s*=\s*([^,\n]+)"),
        "issuer": _grab(r"Issuer:.*CN\s*=\s*([^,\n]+)") or "Unknown",
        "notBefore": _grab(r"Not Before\s*:\s*(.+)") or "Unknown",
        "notAfter": not_after or "Unknown",
        "subjectAltNames": [s.strip().replace("DNS:", "") for s in san.split(",")] if san else [],
    }
    if not_after:
        expires = _to_datetime(not_after)
        if expires:
            now = now or datetime.now(timezone.utc)
            secs = (expires - now).total_seconds()
            days = int(-(-secs // 86400))  # ceil
            info["daysUntilExpiry"] = days
            info["isExpiringSoon"] = days <= 30
            info["isExpired"] = days <= 0
    return info


def _to_datetime(openssl_dt: str) -> Optional[datetime]:
    try:
        return datetime.strptime(openssl_dt, "%b %d %H:%M:%S %Y %Z").replace(tzinfo=timezone.utc)
    except ValueError:
        return None

