# repogrowth/api/routes.py
from __future__ import annotations

from typing import Annotated, Any

from fastapi import APIRouter, Depends, File, Form, Query, UploadFile
from fastapi.responses import StreamingResponse
from pydantic import BaseModel, Field

from repogrowth import digest, ledger, repositories
from repogrowth.api.deps import get_actor, get_engine, require_api_key
from repogrowth.engine import GrowthEngine
from repogrowth.ingest import csv_import
from repogrowth.models import DIGEST_FREQUENCIES, GrowthConfig, Source
from repogrowth.queueing.tasks import enqueue, task_process_import

router = APIRouter(dependencies=[Depends(require_api_key)])

Engine = Annotated[GrowthEngine, Depends(get_engine)]
Actor = Annotated[str | None, Depends(get_actor)]


class RepositoryIn(BaseModel):
    name: str
    owner_id: str | None = None
    description: str | None = None
    snowball_enabled: bool = True
    forward_threshold: int = Field(default=3, ge=1)
    quality_threshold: float = Field(default=0.7, ge=0.0, le=1.0)
    allowed_domains: list[str] = Field(default_factory=list)
    blocked_domains: list[str] = Field(default_factory=list)
    digest_frequency: str = "weekly"


class GrowthConfigPatch(BaseModel):
    snowball_enabled: bool | None = None
    forward_threshold: int | None = Field(default=None, ge=1)
    quality_threshold: float | None = Field(default=None, ge=0.0, le=1.0)
    allowed_domains: list[str] | None = None
    blocked_domains: list[str] | None = None
    digest_frequency: str | None = None


class EmailIn(BaseModel):
    email: str
    source: Source = Source.MANUAL
    tags: dict[str, str] = Field(default_factory=dict)
    verified: bool = False


class ModeratorIn(BaseModel):
    user_id: str


class ForwardIn(BaseModel):
    referrer: str
    referred: str


class AddressIn(BaseModel):
    email: str


class DigestIn(BaseModel):
    period_start: str
    period_end: str


class BounceIn(BaseModel):
    email: str
    repository_id: int | None = None
    reason: str | None = None


# -------------------- repositories --------------------


@router.post("/repositories", status_code=201)
def create_repository(body: RepositoryIn, engine: Engine, actor: Actor) -> dict[str, Any]:
    owner = body.owner_id or actor
    if not owner:
        raise ValueError("owner_id or x-actor-id is required")
    if body.digest_frequency not in DIGEST_FREQUENCIES:
        raise ValueError(f"digest_frequency must be one of {', '.join(DIGEST_FREQUENCIES)}")
    growth = GrowthConfig(
        snowball_enabled=body.snowball_enabled,
        forward_threshold=body.forward_threshold,
        quality_threshold=body.quality_threshold,
        allowed_domains=tuple(body.allowed_domains),
        blocked_domains=tuple(body.blocked_domains),
        digest_frequency=body.digest_frequency,
    )
    repo = engine.create_repository(body.name, owner, description=body.description, growth=growth)
    return repo.to_dict()


@router.get("/repositories/{repository_id}")
def get_repository(repository_id: int, engine: Engine) -> dict[str, Any]:
    return engine.repository(repository_id).to_dict()


@router.patch("/repositories/{repository_id}")
def update_repository(
    repository_id: int, body: GrowthConfigPatch, engine: Engine, actor: Actor
) -> dict[str, Any]:
    changes = body.model_dump(exclude_none=True)
    repo = repositories.update_growth_config(engine.conn, repository_id, actor, **changes)
    return repo.to_dict()


@router.post("/repositories/{repository_id}/moderators")
def add_moderator(
    repository_id: int, body: ModeratorIn, engine: Engine, actor: Actor
) -> dict[str, Any]:
    return repositories.add_moderator(engine.conn, repository_id, actor, body.user_id).to_dict()


@router.post("/repositories/{repository_id}/archive")
def archive_repository(repository_id: int, engine: Engine, actor: Actor) -> dict[str, Any]:
    return repositories.archive_repository(engine.conn, repository_id, actor).to_dict()


@router.get("/repositories/{repository_id}/stats")
def repository_stats(repository_id: int, engine: Engine) -> dict[str, Any]:
    return engine.stats(repository_id)


# -------------------- emails --------------------


@router.post("/repositories/{repository_id}/emails")
def add_email(repository_id: int, body: EmailIn, engine: Engine, actor: Actor) -> dict[str, Any]:
    result = engine.admit(
        repository_id, body.email, body.source, actor, tags=body.tags, verified=body.verified
    )
    return result.to_dict()


@router.get("/repositories/{repository_id}/review")
def review_queue(repository_id: int, engine: Engine) -> list[dict[str, Any]]:
    rid = engine.repository(repository_id).id
    return [e.to_dict() for e in ledger.review_queue(engine.conn, rid)]


@router.post("/repositories/{repository_id}/review/approve")
def approve_review(
    repository_id: int, body: AddressIn, engine: Engine, actor: Actor
) -> dict[str, Any]:
    return ledger.approve_review(engine.conn, repository_id, body.email, actor).to_dict()


@router.post("/repositories/{repository_id}/review/reject")
def reject_review(
    repository_id: int, body: AddressIn, engine: Engine, actor: Actor
) -> dict[str, Any]:
    return ledger.reject_review(engine.conn, repository_id, body.email, actor).to_dict()


@router.post("/repositories/{repository_id}/unsubscribe")
def unsubscribe(repository_id: int, body: AddressIn, engine: Engine) -> dict[str, Any]:
    return {"email": body.email, "changed": engine.unsubscribe(repository_id, body.email)}


# -------------------- CSV import / export --------------------


@router.post("/repositories/{repository_id}/csv", status_code=201)
def upload_csv(
    repository_id: int,
    engine: Engine,
    actor: Actor,
    file: UploadFile = File(...),
    background: bool = Form(False),
) -> dict[str, Any]:
    data = file.file.read()
    if background:
        rid = engine.repository(repository_id).id
        import_id = csv_import.create_import(
            engine.conn, rid, filename=file.filename, imported_by=actor
        )
        job = enqueue(task_process_import, import_id, data)
        summary = csv_import.get_import(engine.conn, import_id).to_dict()
        summary["job_id"] = job.id
        return summary
    return engine.import_csv(
        repository_id, data, filename=file.filename, imported_by=actor
    ).to_dict()


@router.get("/imports/{import_id}")
def get_import(import_id: int, engine: Engine) -> dict[str, Any]:
    return csv_import.get_import(engine.conn, import_id).to_dict()


@router.post("/imports/{import_id}/cancel")
def cancel_import(import_id: int, engine: Engine) -> dict[str, Any]:
    accepted = csv_import.request_cancel(engine.conn, import_id)
    return {"import_id": import_id, "cancel_requested": accepted}


@router.get("/repositories/{repository_id}/export")
def export_repository(
    repository_id: int,
    engine: Engine,
    include_inactive: bool = False,
    source: Annotated[list[str] | None, Query()] = None,
) -> StreamingResponse:
    repo = engine.repository(repository_id)
    body = engine.export(repo, include_inactive=include_inactive, sources=source)
    filename = f"repository-{repo.id}.csv"
    return StreamingResponse(
        iter([body]),
        media_type="text/csv; charset=utf-8",
        headers={"Content-Disposition": f'attachment; filename="{filename}"'},
    )


# -------------------- snowball / digests / bounces --------------------


@router.post("/repositories/{repository_id}/snowball")
def record_forward(repository_id: int, body: ForwardIn, engine: Engine) -> dict[str, Any]:
    return engine.record_forward(repository_id, body.referrer, body.referred).to_dict()


@router.get("/repositories/{repository_id}/snowball/analytics")
def snowball_analytics(
    repository_id: int,
    engine: Engine,
    since: str | None = None,
    limit: Annotated[int, Query(ge=1, le=100)] = 5,
) -> dict[str, Any]:
    return engine.snowball_analytics(repository_id, since=since, limit=limit)


@router.post("/repositories/{repository_id}/digests", status_code=201)
def build_digest(repository_id: int, body: DigestIn, engine: Engine) -> dict[str, Any]:
    return engine.build_digest(repository_id, body.period_start, body.period_end).to_dict()


@router.get("/digests/{job_id}")
def get_digest(job_id: int, engine: Engine) -> dict[str, Any]:
    out = digest.get_job(engine.conn, job_id).to_dict()
    out["recipients"] = digest.recipients(engine.conn, job_id)
    return out


@router.post("/bounces")
def bounce(body: BounceIn, engine: Engine) -> dict[str, Any]:
    touched = engine.handle_bounce(body.email, body.repository_id, reason=body.reason)
    return {"email": body.email, "repositories": touched}
