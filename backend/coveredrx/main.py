# backend/coveredrx/main.py
import logging
import re
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

import uvicorn
from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import ValidationError
from starlette.exceptions import HTTPException as StarletteHTTPException

from coveredrx import config
from coveredrx.schemas import CoverageCheckRequest, InsurancePlan
from coveredrx.services.coverage import CoverageOrchestrator
from coveredrx.services.formulary import FormularyIndex
from coveredrx.services.web_research import ALTERNATIVES, RESEARCH_TYPES

log = logging.getLogger("uvicorn.error")

ZIP_RE = re.compile(r"^\d{5}$")


def _timestamp() -> str:
    return datetime.now(timezone.utc).isoformat()


def success(data: Any) -> Dict[str, Any]:
    return {"success": True, "data": data, "timestamp": _timestamp()}


def failure(status_code: int, message: str, details: Optional[List[Dict[str, str]]] = None) -> JSONResponse:
    error: Dict[str, Any] = {"message": message}
    if details:
        error["details"] = details
    return JSONResponse(status_code=status_code,
                        content={"success": False, "error": error, "timestamp": _timestamp()})


def validate_coverage_request(body: Dict[str, Any]) -> List[Dict[str, str]]:
    errors = []
    medication = body.get("medication") if isinstance(body.get("medication"), dict) else {}
    plan = body.get("insurancePlan") if isinstance(body.get("insurancePlan"), dict) else {}

    name = medication.get("name")
    if not name or not isinstance(name, str) or not name.strip():
        errors.append({"field": "medication.name", "message": "Medication name is required"})
    if not plan.get("id") or not isinstance(plan.get("id"), str):
        errors.append({"field": "insurancePlan.id", "message": "Insurance plan ID is required"})
    for field in ("name", "carrier", "type"):
        if plan.get(field) is not None and not isinstance(plan[field], str):
            errors.append({"field": f"insurancePlan.{field}", "message": f"insurancePlan.{field} must be a string"})

    patient_zip = body.get("patientZipCode")
    if not patient_zip or not isinstance(patient_zip, str):
        errors.append({"field": "patientZipCode", "message": "Patient ZIP code is required"})
    elif not ZIP_RE.match(patient_zip):
        errors.append({"field": "patientZipCode", "message": "ZIP code must be 5 digits"})

    pharmacy_zip = body.get("pharmacyZipCode")
    if pharmacy_zip and (not isinstance(pharmacy_zip, str) or not ZIP_RE.match(pharmacy_zip)):
        errors.append({"field": "pharmacyZipCode", "message": "Pharmacy ZIP code must be 5 digits"})

    for field in ("quantity", "daySupply"):
        value = body.get(field)
        if value is not None and (isinstance(value, bool) or not isinstance(value, int) or value <= 0):
            errors.append({"field": field, "message": f"{field} must be a positive integer"})

    return errors


def build_orchestrator() -> CoverageOrchestrator:
    return CoverageOrchestrator(formulary=FormularyIndex.from_directory(config.FORMULARY_DIR))


def create_app(orchestrator: Optional[CoverageOrchestrator] = None) -> FastAPI:
    app = FastAPI(title="CoveredRx Coverage API", version=config.API_VERSION)
    app.state.orchestrator = orchestrator if orchestrator is not None else build_orchestrator()

    app.add_middleware(
        CORSMiddleware,
        allow_origins=[config.FRONTEND_URL],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.middleware("http")
    async def log_requests(request: Request, call_next):
        log.info("%s - %s %s", _timestamp(), request.method, request.url.path)
        return await call_next(request)

    @app.exception_handler(RequestValidationError)
    async def on_invalid_body(request: Request, exc: RequestValidationError):
        return failure(400, "Validation failed", [{"field": "body", "message": "Request body must be a JSON object"}])

    @app.exception_handler(StarletteHTTPException)
    async def on_http_error(request: Request, exc: StarletteHTTPException):
        if exc.status_code == 404:
            return failure(404, "Route not found")
        return failure(exc.status_code, str(exc.detail))

    @app.post("/coverage/check")
    async def route_coverage_check(payload: dict, request: Request):
        errors = validate_coverage_request(payload)
        if errors:
            return failure(400, "Validation failed", errors)

        log.info("Coverage check request received: %s (web research: %s)",
                 payload["medication"]["name"], bool(payload.get("includeWebResearch")))
        try:
            check = CoverageCheckRequest(
                medication_name=payload["medication"]["name"].strip(),
                insurance_plan=InsurancePlan(**payload["insurancePlan"]),
                patient_zip_code=payload["patientZipCode"],
                pharmacy_zip_code=payload.get("pharmacyZipCode") or payload["patientZipCode"],
                quantity=payload.get("quantity"),
                day_supply=payload.get("daySupply"),
                include_web_research=bool(payload.get("includeWebResearch")),
            )
        except ValidationError as e:
            return failure(400, "Validation failed",
                           [{"field": ".".join(str(p) for p in err["loc"]) or "body", "message": err["msg"]}
                            for err in e.errors()])

        try:
            result = await request.app.state.orchestrator.check_coverage(check)
        except Exception:
            log.exception("Coverage check error")
            return failure(500, "Internal server error")

        if result.web_research is not None:
            log.info("Included web research with %d alternatives", len(result.web_research.alternatives))
        return success(result.to_wire())

    @app.post("/coverage/research")
    async def route_research(payload: dict, request: Request):
        name = payload.get("medicationName")
        if not name or not isinstance(name, str) or not name.strip():
            return failure(400, "Medication name is required")

        research_type = payload.get("researchType") or ALTERNATIVES
        if research_type not in RESEARCH_TYPES:
            return failure(400, "Validation failed",
                           [{"field": "researchType", "message": f"researchType must be one of {', '.join(RESEARCH_TYPES)}"}])

        log.info("Web research request: %s (%s)", name, research_type)
        try:
            result = await request.app.state.orchestrator.perform_web_research(name.strip(), research_type)
        except Exception as e:
            log.exception("Web research error")
            return failure(500, "Web research failed", [{"field": "general", "message": str(e)}])

        log.info("Web research completed: %d alternatives found", len(result.alternatives))
        return success(result.to_wire())

    @app.get("/plans")
    def route_plans(request: Request):
        return success(request.app.state.orchestrator.plans())

    @app.get("/health")
    def health():
        return {
            "status": "ok",
            "timestamp": _timestamp(),
            "version": config.API_VERSION,
            "services": {
                "groq": "configured" if config.GROQ_API_KEY else "missing",
                "toolhouse": "configured" if config.TOOLHOUSE_API_KEY else "missing",
            },
        }

    @app.get("/health/deep")
    async def deep_health(request: Request):
        services = await request.app.state.orchestrator.health_check()
        return {"status": "ok" if all(services.values()) else "degraded",
                "timestamp": _timestamp(), "services": services}

    return app


app = create_app()


if __name__ == "__main__":
    logging.basicConfig(level=logging.INFO)
    uvicorn.run("coveredrx.main:app", host="0.0.0.0", port=config.PORT, reload=True)
