# orchestrator.py
import asyncio
import enum
import logging
import re
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Dict, List, Optional

import requests

from adapters.certbot import Certbot, RunResult, RunState
from adapters.certstore import CertStore
from adapters.dns import TxtResolver
from extractor import ChallengeExtractor, ChallengeRecord

logger = logging.getLogger(__name__)

# Default ACME directory URLs (override via ACME_DIRECTORY_URL)
PROVIDERS = {
    "lets-encrypt":         "https://acme-v02.api.letsencrypt.org/directory",
    "lets-encrypt-staging": "https://acme-staging-v02.api.letsencrypt.org/directory",
    "google":               "https://dv.acme-v02.api.pki.goog/directory",
    "zerossl":              "https://acme.zerossl.com/v2/DV90",
}

HOSTNAME_RE = re.compile(
    r"^(?=.{1,253}$)(?:[A-Za-z0-9](?:[A-Za-z0-9-]{0,61}[A-Za-z0-9])?\.)+[A-Za-z]{2,63}$")

DNS_FAILURE_NEEDLES = ("Incorrect TXT record", "unauthorized")


class ValidationError(ValueError):
    """Malformed or missing request input; nothing has been spawned."""


class AcmeRateLimitError(RuntimeError):
    """Raised when the ACME provider rate-limits duplicate certificates for the same SAN set."""
    def __init__(self, next_retry_iso: str | None, directory_url: str | None, raw_out: str, raw_err: str):
        super().__init__("ACME_RATE_LIMIT")
        self.next_retry_iso = next_retry_iso
        self.directory_url = directory_url
        self.raw_out = raw_out
        self.raw_err = raw_err


class DnsUpdateRequired(RuntimeError):
    """certbot asked for TXT values the caller has not deployed, or rejected the deployed ones."""
    def __init__(self, domain: str, new_records: List[ChallengeRecord], raw_out: str, raw_err: str,
                 exit_code: int | None = None):
        super().__init__(f"DNS validation failed for {domain}. Challenge values may have changed.")
        self.domain = domain
        self.new_records = new_records
        self.raw_out = raw_out
        self.raw_err = raw_err
        self.exit_code = exit_code


class IssueError(RuntimeError):
    def __init__(self, message: str, troubleshooting: List[str], raw_out: str = "", raw_err: str = "",
                 exit_code: int | None = None):
        super().__init__(message)
        self.troubleshooting = troubleshooting
        self.raw_out = raw_out
        self.raw_err = raw_err
        self.exit_code = exit_code


class SpawnError(IssueError):
    """certbot could not be launched (missing binary, permission denied)."""


def _extract_retry_after_iso(acme_out_err_text: str) -> str | None:
    m = re.search(r"retry after\s+([0-9]{4}-[0-9]{2}-[0-9]{2}\s+[0-9]{2}:[0-9]{2}:[0-9]{2})\s+UTC",
                  acme_out_err_text, re.I)
    if not m:
        return None
    try:
        dt = datetime.strptime(m.group(1), "%Y-%m-%d %H:%M:%S")
    except ValueError:
        return None
    return dt.strftime("%Y-%m-%dT%H:%M:%SZ")


def _is_rate_limited(txt: str) -> bool:
    return ("rateLimited" in txt) or ("too many certificates" in txt)


def cert_name_for(domain: str) -> str:
    return domain.replace("*.", "wildcard-")


# ------------------ request / outcome ------------------
@dataclass
class ChallengeRequest:
    domain: str
    email: str
    include_wildcard: bool = False

    def validate(self):
        if not self.domain or not self.email:
            raise ValidationError("Domain and email are required")
        if not HOSTNAME_RE.match(self.domain):
            raise ValidationError("Invalid domain format")

    @property
    def cert_name(self) -> str:
        return cert_name_for(self.domain)

    @property
    def domains(self) -> List[str]:
        if self.include_wildcard:
            return [self.domain, f"*.{self.domain}"]
        return [self.domain]


class OutcomeKind(str, enum.Enum):
    RECORDS = "records"
    NO_RECORDS = "no_records"
    FAILURE = "failure"


@dataclass
class ChallengeOutcome:
    kind: OutcomeKind
    request: ChallengeRequest
    records: List[ChallengeRecord] = field(default_factory=list)
    output: str = ""
    error_output: str = ""
    error: str = ""
    timed_out: bool = False

    @property
    def spawn_failed(self) -> bool:
        return self.kind == OutcomeKind.FAILURE and not self.timed_out


class Orchestrator:
    def __init__(self, certbot: Certbot, resolver: TxtResolver, store: CertStore,
                 challenge_timeout: float = 30, issue_timeout: float = 300,
                 allow_key_export: bool = False):
        self.certbot = certbot
        self.resolver = resolver
        self.store = store
        self.challenge_timeout = challenge_timeout
        self.issue_timeout = issue_timeout
        self.allow_key_export = allow_key_export

    # ------------------ CHALLENGE (dry-run) ------------------
    async def request_challenge(self, req: ChallengeRequest) -> ChallengeOutcome:
        req.validate()
        await self.certbot.cleanup()

        argv = self.certbot.certonly_args(req.email, req.cert_name, req.domains, dry_run=True)
        logger.info("Generating DNS challenge for domain: %s", req.domain)
        ex = ChallengeExtractor(req.domain)

        def _on_stdout(text: str):
            for rec in ex.feed(text):
                logger.info("Found DNS record for %s: %s", req.domain, rec.name)

        res = await self.certbot.run(argv, self.challenge_timeout,
                                     on_stdout=_on_stdout, on_prompt=lambda: True)
        if res.state == RunState.SPAWN_FAILED:
            return ChallengeOutcome(OutcomeKind.FAILURE, req, error=res.error)
        ex.close()

        timed_out = res.state == RunState.TIMED_OUT
        base = dict(request=req, output=res.stdout, error_output=res.stderr, timed_out=timed_out)
        if ex.records:
            return ChallengeOutcome(OutcomeKind.RECORDS, records=list(ex.records), **base)
        if timed_out:
            return ChallengeOutcome(OutcomeKind.FAILURE,
                                    error=f"Certificate generation process timed out for {req.domain}", **base)
        return ChallengeOutcome(OutcomeKind.NO_RECORDS, **base)

    # ------------------ ISSUE (real run) ------------------
    async def issue_certificate(self, domain: str, email: Optional[str], include_wildcard: bool,
                                deployed: List[Dict]) -> Dict:
        if not domain or not isinstance(deployed, list):
            raise ValidationError("Domain and DNS records are required")
        if not HOSTNAME_RE.match(domain):
            raise ValidationError("Invalid domain format")

        known = {(r.get("name"), r.get("value")) for r in deployed if isinstance(r, dict)}
        if not include_wildcard:
            # base + wildcard authorizations share one _acme-challenge name
            include_wildcard = sum(1 for n, _ in known if n == f"_acme-challenge.{domain}") > 1
        req = ChallengeRequest(domain, email or "", include_wildcard)

        await self.certbot.cleanup()
        if not req.email:
            req.email = await asyncio.to_thread(self.certbot.account_email) or f"admin@{domain}"
            logger.info("Using account email %s for %s", req.email, domain)

        argv = self.certbot.certonly_args(req.email, req.cert_name, req.domains,
                                          dry_run=False, force_renewal=True)
        ex = ChallengeExtractor(domain)

        def _on_prompt() -> bool:
            ex.close()
            unknown = [r for r in ex.records if (r.name, r.value) not in known]
            return not unknown

        res = await self.certbot.run(argv, self.issue_timeout, on_stdout=ex.feed, on_prompt=_on_prompt)
        ex.close()
        return self._issue_result(req, res, ex, known)

    def _issue_result(self, req: ChallengeRequest, res: RunResult, ex: ChallengeExtractor,
                      known: set) -> Dict:
        domain = req.domain
        if res.state == RunState.SPAWN_FAILED:
            raise SpawnError(
                f"Failed to start certificate generation for {domain}: {res.error}",
                ["Check if certbot is installed on the server",
                 "Ensure you have proper sudo permissions",
                 "Verify the domain format is correct",
                 "Check server connectivity and DNS resolution"])
        new = [r for r in ex.records if (r.name, r.value) not in known]
        if res.state == RunState.STOPPED:
            raise DnsUpdateRequired(domain, new, res.stdout, res.stderr)
        if res.state == RunState.TIMED_OUT:
            raise IssueError(
                f"Certificate generation timed out for {domain}",
                ["The certificate generation process took too long",
                 "DNS validation may be slow or failing",
                 "Check internet connectivity and DNS propagation",
                 "Try again with verified DNS records"],
                res.stdout, res.stderr)

        if res.returncode != 0:
            txt = res.stderr + res.stdout
            if _is_rate_limited(txt):
                raise AcmeRateLimitError(_extract_retry_after_iso(txt), self.certbot.directory_url,
                                         res.stdout, res.stderr)
            if new or any(n in res.stderr for n in DNS_FAILURE_NEEDLES):
                raise DnsUpdateRequired(domain, new, res.stdout, res.stderr, res.returncode)
            raise IssueError(
                f"Certificate generation failed for {domain} (exit code: {res.returncode})",
                ["Check if domain is accessible from the internet",
                 "Verify DNS records are correctly configured",
                 "Check certbot logs for detailed error information",
                 "Try generating new DNS challenge records"],
                res.stdout, res.stderr, res.returncode)

        bundle = self.store.read_bundle(req.cert_name, include_key=self.allow_key_export)
        if not bundle:
            raise IssueError(
                f"Certificate files not found after generation for {domain}",
                ["Certbot completed but certificate files are missing",
                 "Check certbot logs: sudo journalctl -u certbot",
                 "Verify DNS records are still propagated",
                 "Try running certbot manually to see detailed output"],
                res.stdout, res.stderr)

        cert_path = self.store.path_for(req.cert_name)
        return {
            "success": True,
            "message": f"SSL certificates generated successfully for {domain}!",
            "certificates": bundle,
            "domain": domain,
            "certName": req.cert_name,
            "certificatePath": cert_path,
            "expiryInfo": "Certificates are valid for 90 days",
            "renewalCommand": f"sudo certbot renew --cert-name {req.cert_name}",
            "installationInstructions": _installation_instructions(domain, cert_path),
            "output": res.stdout,
        }

    # ------------------ DNS / CERT INSPECTION ------------------
    async def verify_dns(self, records: List[Dict]) -> Dict:
        if not isinstance(records, list):
            raise ValidationError("DNS records array is required")
        logger.info("Verifying %d DNS records...", len(records))
        checked = []
        for rec in records:
            if not isinstance(rec, dict) or not rec.get("name") or not rec.get("value"):
                raise ValidationError("Each DNS record needs a name and a value")
            res = await self.resolver.check(rec["name"], rec["value"])
            checked.append({**rec, **res, "lastChecked": datetime.now(timezone.utc).isoformat()})

        verified = [r for r in checked if r["verified"]]
        pending = [r for r in checked if not r["verified"]]
        all_ok = not pending
        return {
            "success": True,
            "verified": all_ok,
            "records": checked,
            "summary": {"total": len(checked), "verified": len(verified),
                        "pending": len(pending), "allVerified": all_ok},
            "pendingRecords": pending,
            "message": "All DNS records verified successfully!" if all_ok else
                       f"{len(verified)}/{len(checked)} DNS records verified. "
                       "Please wait for propagation of remaining records.",
            "nextSteps": ["Proceed to certificate generation"] if all_ok else
                         ["Wait 5-10 minutes for DNS propagation",
                          "Verify records are correctly added to your DNS provider",
                          "Check again for DNS propagation"],
        }

    def verify_certificate(self, domain: str) -> Optional[Dict]:
        """None when the live files are missing; RuntimeError when openssl cannot read them."""
        if not domain:
            raise ValidationError("Domain is required")
        name = cert_name_for(domain)
        if not self.store.has_all(name):
            return None
        info = self.store.inspect(name)
        files = self.store.files(name)
        return {
            "domain": info.get("domain") or domain,
            "expiryDate": info.get("notAfter", "Unknown"),
            "paths": {"certificate": files["cert"], "privateKey": files["privkey"],
                      "chain": files["chain"], "fullchain": files["fullchain"]},
        }

    def certificate_status(self, domain: str) -> Dict:
        if not domain:
            raise ValidationError("Domain is required")
        logger.info("Checking certificate status for domain: %s", domain)

        info = None
        for name in dict.fromkeys([domain, cert_name_for(domain), domain.replace(".", "-")]):
            try:
                info = self.store.inspect(name)
                break
            except (RuntimeError, OSError) as e:
                logger.debug("No readable certificate under %s: %s", name, e)

        try:
            all_certs = self.certbot.list_certificates()
        except (RuntimeError, OSError) as e:
            logger.warning("Could not list certificates: %s", e)
            all_certs = []

        https = probe_https(domain)
        cert_name = info["certName"] if info else cert_name_for(domain)
        resp = {
            "success": True,
            "hasCertificate": info is not None,
            "httpsStatus": https,
            "allCertificates": all_certs,
            "renewalCommand": f"sudo certbot renew --cert-name {cert_name}",
            "managementCommands": {
                "renew": f"sudo certbot renew --cert-name {cert_name}",
                "revoke": f"sudo certbot revoke --cert-name {cert_name}",
                "delete": f"sudo certbot delete --cert-name {cert_name}",
                "test": f"sudo certbot renew --cert-name {cert_name} --dry-run",
            },
            "recommendations": _recommendations(info, https),
        }
        if info:
            resp["certificate"] = info
            resp["message"] = f"Certificate found for {domain}"
        else:
            resp["message"] = f"No certificate found for {domain}"
            resp["suggestions"] = ["Generate DNS challenge records for this domain",
                                   "Add the TXT records and verify propagation",
                                   "Run certificate generation"]
        return resp


# ------------------ module-level helpers ------------------
def probe_https(domain: str, timeout: float = 10) -> Dict:
    try:
        r = requests.head(f"https://{domain}", timeout=timeout, allow_redirects=False)
        return {"accessible": True, "statusCode": r.status_code,
                "response": f"HTTP {r.status_code} {r.reason}"}
    except requests.exceptions.RequestException as e:
        return {"accessible": False, "statusCode": None, "error": str(e)}


def _recommendations(info: Optional[Dict], https: Dict) -> List[Dict]:
    recs = []
    if info is None:
        recs.append({"type": "info", "message": "No certificate is installed for this domain",
                     "action": "Generate a certificate with the DNS challenge wizard"})
    elif info.get("isExpired"):
        recs.append({"type": "critical", "message": "Certificate has expired",
                     "action": "Renew the certificate immediately"})
    elif info.get("isExpiringSoon"):
        recs.append({"type": "warning",
                     "message": f"Certificate expires in {info.get('daysUntilExpiry')} days",
                     "action": "Renew the certificate soon"})
    if not https.get("accessible"):
        recs.append({"type": "warning", "message": "HTTPS endpoint is not reachable",
                     "action": "Check web server configuration and firewall rules"})
    return recs


def _installation_instructions(domain: str, cert_path: str) -> Dict[str, List[str]]:
    return {
        "cPanel": [
            "Go to cPanel → SSL/TLS → Install and Manage SSL",
            f"Select {domain}",
            "Upload or paste the Full Chain certificate in the Certificate (CRT) field",
            "Upload or paste the Private Key in the Private Key (KEY) field",
            "Upload or paste the Chain certificate in the Certificate Authority Bundle (CABUNDLE) field",
            "Click Install Certificate",
        ],
        "nginx": [
            f"Configure your Nginx server block for {domain}",
            f"Add: ssl_certificate {cert_path}/fullchain.pem;",
            f"Add: ssl_certificate_key {cert_path}/privkey.pem;",
            "Test configuration: sudo nginx -t",
            "Restart Nginx: sudo systemctl restart nginx",
        ],
        "apache": [
            f"Configure your Apache virtual host for {domain}",
            f"Add: SSLCertificateFile {cert_path}/cert.pem",
            f"Add: SSLCertificateKeyFile {cert_path}/privkey.pem",
            f"Add: SSLCertificateChainFile {cert_path}/chain.pem",
            "Test configuration: sudo apache2ctl configtest",
            "Restart Apache: sudo systemctl restart apache2",
        ],
    }
