import logging
import os
from typing import Optional, List, Dict, Any
from fastapi import FastAPI, Response
from fastapi.responses import JSONResponse
from pydantic import BaseModel
from fastapi.middleware.cors import CORSMiddleware
from adapters.certbot import Certbot
from adapters.certstore import CertStore
from adapters.dns import TxtResolver, PUBLIC_RESOLVERS
from orchestrator import (
    Orchestrator, ChallengeRequest, ChallengeOutcome, OutcomeKind, PROVIDERS,
    ValidationError, AcmeRateLimitError, DnsUpdateRequired, IssueError,
)

logger = logging.getLogger(__name__)

app = FastAPI(title="ACME DNS Manual", version="0.1.0")

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=False,
    allow_methods=["*"],
    allow_headers=["*"],
)

# --- universal preflight handler (safety net) ---
@app.options("/{rest_of_path:path}")
def options_cors_preflight(rest_of_path: str):
    return Response(status_code=200)

orc: Optional[Orchestrator] = None


def _flag(name: str, default: str) -> bool:
    return os.getenv(name, default).lower() in ("1", "true", "yes")


@app.on_event("startup")
def _startup():
    global orc
    logging.basicConfig(
        level=os.getenv("LOG_LEVEL", "INFO").upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    provider = os.getenv("ACME_PROVIDER", "lets-encrypt")
    directory_url = os.getenv("ACME_DIRECTORY_URL") or PROVIDERS.get(provider)
    if not directory_url:
        raise RuntimeError(f"Unknown ACME_PROVIDER {provider!r} and no ACME_DIRECTORY_URL set")
    live_dir = os.getenv("CERTBOT_LIVE_DIR", "/etc/letsencrypt/live")

    certbot = Certbot(
        binary=os.getenv("CERTBOT_BIN", "certbot"),
        use_sudo=_flag("CERTBOT_SUDO", "false"),
        directory_url=directory_url,
        live_dir=live_dir,
        lock_file=os.getenv("CERTBOT_LOCK_FILE", "/var/lib/letsencrypt/.certbot.lock"),
        tmp_glob=os.getenv("CERTBOT_TMP_GLOB", "/tmp/certbot-*"),
        cleanup_enabled=_flag("CERTBOT_CLEANUP", "true"),
        cleanup_pause=float(os.getenv("CLEANUP_PAUSE", "2")),
    )
    servers = [s.strip() for s in os.getenv("DNS_SERVERS", ",".join(PUBLIC_RESOLVERS)).split(",") if s.strip()]
    resolver = TxtResolver(servers=servers, quorum=int(os.getenv("DNS_QUORUM", "2")),
                           dig=os.getenv("DIG_BIN", "dig"))
    store = CertStore(live_dir=live_dir, openssl=os.getenv("OPENSSL_BIN", "openssl"))

    orc = Orchestrator(
        certbot=certbot,
        resolver=resolver,
        store=store,
        challenge_timeout=float(os.getenv("CHALLENGE_TIMEOUT", "30")),
        issue_timeout=float(os.getenv("ISSUE_TIMEOUT", "300")),
        allow_key_export=_flag("ALLOW_KEY_EXPORT", "false"),
    )
    logger.info("Using ACME directory %s, certbot=%s", directory_url, certbot.binary)


# ---------- Models ----------
class GenerateCertInput(BaseModel):
    domain: Optional[str] = None
    email: Optional[str] = None
    includeWildcard: Optional[bool] = False

class GenerateCertificatesInput(BaseModel):
    domain: Optional[str] = None
    email: Optional[str] = None
    includeWildcard: Optional[bool] = False
    dnsRecords: Optional[List[Dict[str, Any]]] = None

class VerifyDnsInput(BaseModel):
    records: Optional[List[Dict[str, Any]]] = None

class DomainInput(BaseModel):
    domain: Optional[str] = None


def _bad_request(msg: str) -> JSONResponse:
    return JSONResponse(status_code=400, content={"success": False, "error": msg})


def _server_error(msg: str, troubleshooting: List[str], **extra) -> JSONResponse:
    return JSONResponse(status_code=500, content={
        "success": False, "error": msg, "troubleshooting": troubleshooting, **extra})


# ---------- Health ----------
@app.get("/readyz")
def readyz():
    ok = orc is not None and orc.certbot.available()
    return JSONResponse(status_code=200 if ok else 503,
                        content={"ok": ok, "certbot": orc.certbot.binary if orc else None})


# ---------- Challenge (dry-run) ----------
@app.post("/generate-cert")
async def generate_cert(inp: GenerateCertInput):
    req = ChallengeRequest(domain=(inp.domain or "").strip(), email=(inp.email or "").strip(),
                           include_wildcard=bool(inp.includeWildcard))
    try:
        outcome = await orc.request_challenge(req)  # type: ignore
    except ValidationError as e:
        return _bad_request(str(e))
    except Exception as e:
        logger.exception("Certificate generation error for %s", req.domain)
        return _server_error(f"Certificate generation failed: {e}", [
            "Check server configuration",
            "Verify certbot installation",
            "Check domain DNS settings",
            "Review server logs",
        ])
    return challenge_response(outcome, orc.certbot)  # type: ignore


def challenge_response(outcome: ChallengeOutcome, certbot: Certbot) -> JSONResponse:
    req = outcome.request
    domain = req.domain

    if outcome.kind == OutcomeKind.FAILURE:
        if outcome.spawn_failed:
            return _server_error(
                f"Failed to start certificate generation process for {domain}: {outcome.error}", [
                    "Check if certbot is installed on the server",
                    "Ensure you have proper permissions",
                    "Verify the domain format is correct",
                    "Check that the server has internet connectivity",
                ])
        return _server_error(outcome.error, [
            "The process took too long to respond",
            "Try with a simpler domain configuration",
            "Check server load and connectivity",
            "Retry the operation",
        ], output=outcome.output, errorOutput=outcome.error_output)

    server_command = certbot.manual_command(req.email, req.cert_name, req.domains)
    body = {
        "success": True,
        "serverCommand": server_command,
        "certificatePath": f"{certbot.cert_dir(req.cert_name)}/",
        "targetDomain": domain,
    }

    if outcome.kind == OutcomeKind.RECORDS:
        body.update({
            "message": f"DNS verification required for {domain}. Add these TXT records to your DNS provider.",
            "dnsRecords": [r.to_dict() for r in outcome.records],
            "instructions": [
                f"Add the DNS TXT records shown above to {domain}'s DNS provider",
                "Wait 5-10 minutes for DNS propagation",
                "Run the server command to generate real certificates",
                "When prompted, press Enter to continue verification",
            ],
            "note": (f"Process timed out, but found DNS records for {domain}." if outcome.timed_out else
                     f"The server command has no --dry-run flag and issues real certificates for {domain}."),
        })
        return JSONResponse(status_code=200, content=body)

    body.update({
        "message": f"Please run the server command below to get DNS verification instructions for {domain}.",
        "instructions": [
            "SSH into your server",
            "Run the server command shown above",
            f"Certbot will show you the DNS TXT records to add for {domain}",
            "Add those records to your DNS provider",
            "Wait for DNS propagation, then press Enter in certbot",
        ],
        "note": (f"This command will show you the exact DNS records needed for {domain}. "
                 "The actual DNS values will be displayed when you run certbot on your server."),
        "output": outcome.output,
        "errorOutput": outcome.error_output,
    })
    return JSONResponse(status_code=200, content=body)


# ---------- Issue (real run) ----------
@app.post("/generate-certificates")
async def generate_certificates(inp: GenerateCertificatesInput):
    domain = (inp.domain or "").strip()
    try:
        return await orc.issue_certificate(  # type: ignore
            domain, (inp.email or "").strip() or None, bool(inp.includeWildcard), inp.dnsRecords)
    except ValidationError as e:
        return _bad_request(str(e))
    except DnsUpdateRequired as e:
        return JSONResponse(status_code=409, content={
            "success": False,
            "error": str(e),
            "dnsUpdateRequired": True,
            "newDnsRecords": [r.to_dict() for r in e.new_records],
            "message": "Let's Encrypt generated new challenge values. Please update your DNS records.",
            "troubleshooting": [
                "Let's Encrypt has generated new DNS challenge values",
                "Update your DNS records with the new values shown",
                "Wait 5-10 minutes for DNS propagation",
                "Try generating certificates again",
            ],
            "output": e.raw_out,
            "errorOutput": e.raw_err,
            "certbotExitCode": e.exit_code,
        })
    except AcmeRateLimitError as e:
        return JSONResponse(status_code=429, content={
            "success": False,
            "error": "acme_rate_limited",
            "message": (
                "ACME provider rate limit reached for this exact domain set."
                + (f" You can try again after {e.next_retry_iso}." if e.next_retry_iso else " Please try again later.")
            ),
            "retry_after": e.next_retry_iso,
            "directory_url": e.directory_url,
            "troubleshooting": ["Use the provider's staging directory for tests, or retry later."],
        })
    except IssueError as e:
        return JSONResponse(status_code=500, content={
            "success": False,
            "error": str(e),
            "troubleshooting": e.troubleshooting,
            "output": e.raw_out,
            "errorOutput": e.raw_err,
            "certbotExitCode": e.exit_code,
        })
    except Exception as e:
        logger.exception("Certificate issuance error for %s", domain)
        return _server_error(f"Certificate generation failed: {e}", [
            "Check server configuration",
            "Verify certbot installation and permissions",
            "Verify DNS records are still propagated",
            "Review server logs",
        ])


# ---------- DNS propagation ----------
@app.post("/verify-dns")
async def verify_dns(inp: VerifyDnsInput):
    if inp.records is None:
        return _bad_request("DNS records array is required")
    try:
        return await orc.verify_dns(inp.records)  # type: ignore
    except ValidationError as e:
        return _bad_request(str(e))


# ---------- Certificate inspection ----------
@app.post("/verify-cert")
def verify_cert(inp: DomainInput):
    try:
        cert = orc.verify_certificate((inp.domain or "").strip())  # type: ignore
    except ValidationError as e:
        return _bad_request(str(e))
    except (RuntimeError, OSError) as e:
        logger.error("Certificate verification failed: %s", e)
        return JSONResponse(status_code=500, content={"success": False, "error": "Certificate verification failed"})
    if cert is None:
        return JSONResponse(status_code=404, content={"success": False, "error": "Certificate files not found"})
    return {"success": True, "message": "Certificate verified successfully", "certificate": cert}


@app.post("/certificate-status")
def certificate_status(inp: DomainInput):
    try:
        return orc.certificate_status((inp.domain or "").strip())  # type: ignore
    except ValidationError as e:
        return _bad_request(str(e))


def main():
    import uvicorn
    config = uvicorn.Config(
        "server:app",
        host=os.getenv("HOST", "0.0.0.0"),
        port=int(os.getenv("PORT", "5000")),
        loop="asyncio",
        lifespan="on",
    )
    uvicorn.Server(config).run()


if __name__ == "__main__":
    main()
