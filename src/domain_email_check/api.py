import logging
from typing import Optional

from fastapi import FastAPI, Query, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from . import policies
from .config import API_VERSION
from .core import generate_report
from .models import DomainAnalysis, DomainRequest

logger = logging.getLogger(__name__)

app = FastAPI(title="domain-email-check", version=API_VERSION)


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError):
    errors = [
        {"field": ".".join(str(p) for p in err["loc"] if p != "body"), "message": err["msg"]}
        for err in exc.errors()
    ]
    return JSONResponse(status_code=400, content={"error": {"fieldErrors": errors}})


@app.exception_handler(Exception)
async def internal_error_handler(request: Request, exc: Exception):
    logger.exception("Domain analysis error")
    return JSONResponse(status_code=500, content={"error": str(exc) or "Failed to analyze domain"})


@app.get("/health")
async def health():
    """Simple health check endpoint."""
    return {"status": "ok", "service": "domain-email-check", "apiVersion": API_VERSION}


@app.post("/api/domain", response_model=DomainAnalysis, response_model_exclude_none=True)
async def analyze_domain(req: DomainRequest):
    """Full analysis: policies, blacklists, reputation, DMARC simulation and STARTTLS probes."""
    return await generate_report(
        req.domain,
        dkim_selector=req.dkim_selector,
        header_from=req.header_from,
        envelope_from=req.envelope_from,
        quick_test=req.quick_test,
        compel_tls=req.compel_tls,
        direct_tls=req.direct_tls,
        ports=req.port_list(),
        stop_after=req.stop_after,
        mx_host_limit=req.mx_host_limit,
    )


@app.get("/spf/{domain}")
async def get_spf(domain: str):
    """Return the parsed SPF record for a domain."""
    result = await policies.resolve_spf(domain.strip().lower())
    return {"domain": domain, "spf": result.to_dict()}


@app.get("/dmarc/{domain}")
async def get_dmarc(domain: str):
    """Return the parsed DMARC record for a domain."""
    result = await policies.resolve_dmarc(domain.strip().lower())
    return {"domain": domain, "dmarc": result.to_dict()}


@app.get("/dkim/{domain}")
async def get_dkim(domain: str, selector: Optional[str] = Query(None)):
    """Return DKIM selector info.

    If 'selector' is provided, check that selector only. Otherwise probe the
    common selector shortlist.
    """
    domain = domain.strip().lower()
    if selector:
        info = await policies.resolve_dkim(domain, selector.strip().lower())
        return {"domain": domain, "selector": selector, "dkim": info.to_dict()}
    discovery = await policies.discover_dkim_selectors(domain)
    return {"domain": domain, "dkimDiscovery": discovery.to_dict()}
