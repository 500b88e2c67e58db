# adapters/dns.py
import asyncio
import logging
from typing import Dict, List, Optional

logger = logging.getLogger(__name__)

PUBLIC_RESOLVERS = ["8.8.8.8", "1.1.1.1", "8.8.4.4", "1.0.0.1"]


class TxtResolver:
    """
    Public-resolver TXT lookups through `dig +short`.

    One query per (name, server); a record counts as propagated once
    `quorum` servers return the expected value.
    """
    def __init__(self, servers: Optional[List[str]] = None, quorum: int = 2,
                 dig: str = "dig", timeout: float = 10.0):
        self.servers = servers or list(PUBLIC_RESOLVERS)
        self.quorum = quorum
        self.dig = dig
        self.timeout = timeout

    async def query(self, name: str, server: str) -> Dict:
        try:
            proc = await asyncio.create_subprocess_exec(
                self.dig, "+short", "TXT", name, f"@{server}",
                stdout=asyncio.subprocess.PIPE, stderr=asyncio.subprocess.PIPE)
        except (OSError, ValueError) as e:
            return {"server": server, "values": [], "error": str(e)}
        try:
            out, err = await asyncio.wait_for(proc.communicate(), self.timeout)
        except asyncio.TimeoutError:
            proc.kill()
            await proc.wait()
            return {"server": server, "values": [], "error": f"timed out after {self.timeout}s"}
        if err:
            logger.warning("DNS query warning for %s via %s: %s", name, server, err.decode(errors="replace").strip())
        if proc.returncode != 0:
            return {"server": server, "values": [], "error": f"dig exited with {proc.returncode}"}
        return {"server": server, "values": parse_txt(out.decode(errors="replace")), "error": None}

    async def check(self, name: str, expected: str) -> Dict:
        results = await asyncio.gather(*(self.query(name, s) for s in self.servers))
        for r in results:
            r["verified"] = any(v == expected or expected in v for v in r["values"])
        verified = sum(1 for r in results if r["verified"])
        seen: List[str] = []
        for r in results:
            for v in r["values"]:
                if v not in seen:
                    seen.append(v)
        ok = verified >= self.quorum
        logger.info("DNS verification for %s: %s (%d/%d servers)",
                    name, "SUCCESS" if ok else "PENDING", verified, len(self.servers))
        return {
            "verified": ok,
            "currentValues": seen,
            "verificationDetails": {
                "serversChecked": len(self.servers),
                "serversVerified": verified,
                "serverResults": [{"server": r["server"], "verified": r["verified"],
                                   "valueCount": len(r["values"]), "error": r["error"]}
                                  for r in results],
            },
        }


def parse_txt(out: str) -> List[str]:
    # dig prints long TXT records as several quoted strings on one line
    vals = []
    for line in out.splitlines():
        v = line.replace('"', "").replace(" ", "").strip()
        if v:
            vals.append(v)
    return vals
