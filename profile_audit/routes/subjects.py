from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Body, HTTPException, Query
from pydantic import ValidationError as PydanticValidationError

from profile_audit.application import get_audit_service
from profile_audit.core.schema import BusinessProfile, GridRequest
from profile_audit.domain.errors import (
    JobCancelledError,
    JobError,
    NoResultsError,
    PermanentJobError,
    RetriesExhaustedError,
    ValidationError,
)

router = APIRouter(prefix="/subjects", tags=["subjects"])


def _job_http_error(exc: JobError) -> HTTPException:
    if isinstance(exc, NoResultsError):
        status = 404
    elif isinstance(exc, PermanentJobError):
        status = 422
    elif isinstance(exc, RetriesExhaustedError):
        status = 503
    elif isinstance(exc, JobCancelledError):
        status = 409
    else:
        status = 500
    return HTTPException(status_code=status, detail=exc.user_message)


def _optional_int(payload: dict, key: str) -> int | None:
    value = payload.get(key)
    if value in (None, ""):
        return None
    try:
        return int(value)
    except (TypeError, ValueError) as exc:
        raise HTTPException(status_code=400, detail=f"{key} must be an integer") from exc


def _required_float(payload: dict, key: str) -> float:
    try:
        return float(payload[key])
    except KeyError as exc:
        raise HTTPException(status_code=400, detail=f"{key} is required") from exc
    except (TypeError, ValueError) as exc:
        raise HTTPException(status_code=400, detail=f"{key} must be a number") from exc


@router.post("/{subject_id}/activate")
async def activate_subject(subject_id: str, payload: dict | None = Body(None)) -> dict:
    label = (payload or {}).get("label")
    service = get_audit_service()
    state = service.switch_subject(subject_id, label=str(label) if label else None)
    return {"subject_id": subject_id, "state": state.model_dump(mode="json")}


@router.get("/{subject_id}/audit")
async def get_subject_audit(subject_id: str) -> dict:
    service = get_audit_service()
    audit = service.get_audit(subject_id)
    if audit is None:
        raise HTTPException(status_code=404, detail="no audit cached for subject")
    scrape_error = service.scrape_error(subject_id)
    return {
        "subject_id": subject_id,
        "active": subject_id == service.cache.current_subject_id,
        "audit": audit.model_dump(mode="json"),
        "scrape_error": scrape_error.model_dump(mode="json") if scrape_error else None,
    }


@router.put("/{subject_id}/business")
async def set_subject_business(subject_id: str, payload: dict) -> dict:
    raw = payload.get("business")
    if not isinstance(raw, dict):
        raise HTTPException(status_code=400, detail="business is required")
    try:
        business = BusinessProfile.model_validate(raw)
    except PydanticValidationError as exc:
        raise HTTPException(status_code=400, detail=exc.errors(include_url=False, include_context=False)) from exc
    basic_score = _optional_int(payload, "basic_score") or 0

    entry = get_audit_service().set_business(subject_id, business, basic_score=basic_score)
    return {"subject_id": subject_id, "audit": entry.model_dump(mode="json")}


@router.post("/{subject_id}/reset")
async def reset_subject(subject_id: str) -> dict:
    get_audit_service().reset_subject(subject_id)
    return {"subject_id": subject_id, "status": "reset"}


@router.post("/{subject_id}/reviews")
async def fetch_subject_reviews(subject_id: str, payload: dict, wait: bool = Query(False)) -> dict:
    keyword = payload.get("keyword") or None
    place_id = payload.get("place_id") or None
    depth = _optional_int(payload, "depth")
    service = get_audit_service()
    try:
        if not wait:
            return {"task_id": service.start_reviews(subject_id, keyword=keyword, place_id=place_id, depth=depth)}
        audit = await service.fetch_reviews(subject_id, keyword=keyword, place_id=place_id, depth=depth)
    except ValidationError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    except JobError as exc:
        raise _job_http_error(exc) from exc
    return {"review_data": audit.model_dump(mode="json")}


@router.post("/{subject_id}/scrape")
async def scrape_subject(subject_id: str, payload: dict, wait: bool = Query(False)) -> dict:
    place_id = str(payload.get("place_id") or "")
    service = get_audit_service()
    try:
        if not wait:
            return {"task_id": service.start_scrape(subject_id, place_id)}
        scraped = await service.fetch_scrape(subject_id, place_id)
    except ValidationError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    except JobError as exc:
        scrape_error = service.scrape_error(subject_id)
        if scrape_error is not None:
            raise HTTPException(status_code=502, detail=scrape_error.model_dump(mode="json")) from exc
        raise _job_http_error(exc) from exc
    return {"scraped_data": scraped.model_dump(mode="json")}


@router.post("/{subject_id}/rank")
async def rank_subject(subject_id: str, payload: dict, wait: bool = Query(False)) -> dict:
    keyword = str(payload.get("keyword") or "")
    target_place_id = str(payload.get("target_place_id") or "")
    if not keyword or not target_place_id:
        raise HTTPException(status_code=400, detail="keyword and target_place_id are required")
    options: dict[str, Any] = {
        "keyword": keyword,
        "lat": _required_float(payload, "lat"),
        "lng": _required_float(payload, "lng"),
        "target_place_id": target_place_id,
        "business_name": payload.get("business_name"),
    }
    service = get_audit_service()
    try:
        if not wait:
            return {"task_id": service.start_rank_single(subject_id, **options)}
        result = await service.fetch_rank_single(subject_id, **options)
    except (ValidationError, PydanticValidationError) as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    except JobError as exc:
        raise _job_http_error(exc) from exc
    return {"result": result.model_dump(mode="json")}


@router.post("/{subject_id}/rank/grid")
async def rank_grid_subject(subject_id: str, payload: dict, wait: bool = Query(False)) -> dict:
    try:
        request = GridRequest.model_validate(payload)
    except PydanticValidationError as exc:
        raise HTTPException(status_code=400, detail=exc.errors(include_url=False, include_context=False)) from exc

    service = get_audit_service()
    try:
        if not wait:
            return {"task_id": service.start_rank_grid(subject_id, request)}
        run = await service.fetch_rank_grid(subject_id, request)
    except ValidationError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    except JobError as exc:
        raise _job_http_error(exc) from exc
    return {
        "points": [point.model_dump(mode="json") for point in run.points],
        "summary": run.summary.model_dump(mode="json"),
    }
