from __future__ import annotations

from contextlib import asynccontextmanager

from fastapi import Depends, FastAPI, Query, Request
from fastapi.responses import JSONResponse

from dealpilot.errors import (
    InvalidTransitionError,
    NotFoundError,
    RecomputationError,
    StalenessError,
    TransientStorageError,
)
from dealpilot.schemas import (
    AdvanceRequest,
    Communication,
    CommunicationCreate,
    Intelligence,
    IntelligencePatch,
    MarkProcessed,
    Opportunity,
    OpportunityCreate,
    OpportunityFilter,
    OpportunityUpdate,
    OpportunityView,
    PortfolioSummary,
    Recommendations,
    Scores,
    Stage,
    Stakeholder,
    StakeholderCreate,
    StakeholderUpdate,
    WeeklyFocus,
)
from dealpilot.services import DealPipeline, PipelineConfig


RETRY_AFTER_SECONDS = 1


@asynccontextmanager
async def lifespan(app: FastAPI):
    app.state.pipeline = DealPipeline.from_config(PipelineConfig.from_env())
    yield


app = FastAPI(
    title="DealPilot",
    version="0.1.0",
    description=(
        "Deal intelligence API. Track opportunities, feed in extracted insights, "
        "and read back confidence scores, next-best-actions and portfolio rollups. "
        "All endpoints return JSON. No authentication required."
    ),
    lifespan=lifespan,
    openapi_tags=[
        {"name": "Opportunities", "description": "Create, browse, update and advance opportunities."},
        {"name": "Stakeholders", "description": "People on the buying side of an opportunity."},
        {"name": "Communications", "description": "Captured communications and their extracted insights."},
        {"name": "Intelligence", "description": "Categorized facts behind the scores."},
        {"name": "Scoring", "description": "Derived scores and recommendations."},
        {"name": "Portfolio", "description": "Pipeline metrics, priorities and the weekly focus digest."},
        {"name": "Admin", "description": "Administrative operations."},
    ],
)


# ---------------------------------------------------------------------------
# Dependencies & error mapping
# ---------------------------------------------------------------------------


def get_pipeline(request: Request) -> DealPipeline:
    return request.app.state.pipeline


@app.exception_handler(NotFoundError)
async def _not_found(request: Request, exc: NotFoundError):
    return JSONResponse(status_code=404, content={"detail": str(exc)})


@app.exception_handler(InvalidTransitionError)
async def _invalid_transition(request: Request, exc: InvalidTransitionError):
    return JSONResponse(status_code=409, content={"detail": str(exc)})


@app.exception_handler(TransientStorageError)
async def _transient(request: Request, exc: TransientStorageError):
    return JSONResponse(
        status_code=503,
        content={"detail": "Storage temporarily unavailable, try again", "retryable": True},
        headers={"Retry-After": str(RETRY_AFTER_SECONDS)},
    )


@app.exception_handler(RecomputationError)
@app.exception_handler(StalenessError)
async def _recomputation(request: Request, exc: Exception):
    # details are in the server log; callers only learn that a retry is pending
    return JSONResponse(
        status_code=500, content={"detail": "recomputation failed, will retry", "retryable": True},
    )


# ---------------------------------------------------------------------------
# Routes: Opportunities
# ---------------------------------------------------------------------------


@app.get("/api/opportunities", response_model=list[Opportunity],
         tags=["Opportunities"], summary="List opportunities with optional filters")
async def list_opportunities(
    stage: Stage | None = Query(None),
    counterparty: str | None = Query(None, description="Substring match on counterparty"),
    min_value: float | None = Query(None),
    max_value: float | None = Query(None),
    search: str | None = Query(None, description="Free text over name and counterparty"),
    pipeline: DealPipeline = Depends(get_pipeline),
):
    flt = OpportunityFilter(
        stage=stage, counterparty=counterparty, min_value=min_value, max_value=max_value, search=search,
    )
    return await pipeline.list_opportunities(flt)


@app.post("/api/opportunities", response_model=OpportunityView, status_code=201,
          tags=["Opportunities"], summary="Create an opportunity")
async def create_opportunity(body: OpportunityCreate, pipeline: DealPipeline = Depends(get_pipeline)):
    return await pipeline.create_opportunity(body)


@app.get("/api/opportunities/{opportunity_id}", response_model=OpportunityView,
         tags=["Opportunities"], summary="Opportunity with stakeholders, scores, recommendations and recent communications")
async def get_opportunity(opportunity_id: str, pipeline: DealPipeline = Depends(get_pipeline)):
    return await pipeline.get_opportunity_view(opportunity_id)


@app.patch("/api/opportunities/{opportunity_id}", response_model=Opportunity,
           tags=["Opportunities"], summary="Update opportunity fields")
async def update_opportunity(
    opportunity_id: str, body: OpportunityUpdate, pipeline: DealPipeline = Depends(get_pipeline),
):
    return await pipeline.update_opportunity(opportunity_id, body)


@app.delete("/api/opportunities/{opportunity_id}",
            tags=["Opportunities"], summary="Delete an opportunity and everything attached to it")
async def delete_opportunity(opportunity_id: str, pipeline: DealPipeline = Depends(get_pipeline)):
    await pipeline.delete_opportunity(opportunity_id)
    return {"ok": True}


@app.post("/api/opportunities/{opportunity_id}/advance", response_model=Opportunity,
          tags=["Opportunities"], summary="Advance to the next stage")
async def advance_opportunity(
    opportunity_id: str, body: AdvanceRequest | None = None, pipeline: DealPipeline = Depends(get_pipeline),
):
    return await pipeline.advance_stage(opportunity_id, body.reason if body else None)


# ---------------------------------------------------------------------------
# Routes: Scores & recommendations
# ---------------------------------------------------------------------------


@app.get("/api/opportunities/{opportunity_id}/scores", response_model=Scores,
         tags=["Scoring"], summary="Latest scores")
async def get_scores(opportunity_id: str, pipeline: DealPipeline = Depends(get_pipeline)):
    return await pipeline.get_scores(opportunity_id)


@app.post("/api/opportunities/{opportunity_id}/scores", response_model=Scores,
          tags=["Scoring"], summary="Recompute scores and recommendations")
async def recompute_scores(opportunity_id: str, pipeline: DealPipeline = Depends(get_pipeline)):
    view = await pipeline.recompute(opportunity_id)
    return view.scores


@app.get("/api/opportunities/{opportunity_id}/recommendations", response_model=Recommendations,
         tags=["Scoring"], summary="Latest next-best-actions and risks")
async def get_recommendations(opportunity_id: str, pipeline: DealPipeline = Depends(get_pipeline)):
    return await pipeline.get_recommendations(opportunity_id)


@app.post("/api/opportunities/{opportunity_id}/recommendations", response_model=Recommendations,
          tags=["Scoring"], summary="Recompute scores and recommendations")
async def recompute_recommendations(opportunity_id: str, pipeline: DealPipeline = Depends(get_pipeline)):
    view = await pipeline.recompute(opportunity_id)
    return view.recommendations


# ---------------------------------------------------------------------------
# Routes: Intelligence
# ---------------------------------------------------------------------------


@app.get("/api/opportunities/{opportunity_id}/intelligence", response_model=Intelligence,
         tags=["Intelligence"], summary="All seven intelligence categories")
async def get_intelligence(opportunity_id: str, pipeline: DealPipeline = Depends(get_pipeline)):
    return await pipeline.get_intelligence(opportunity_id)


@app.patch("/api/opportunities/{opportunity_id}/intelligence", response_model=Intelligence,
           tags=["Intelligence"], summary="Edit intelligence fields directly")
async def patch_intelligence(
    opportunity_id: str, body: IntelligencePatch, pipeline: DealPipeline = Depends(get_pipeline),
):
    return await pipeline.update_intelligence(opportunity_id, body)


# ---------------------------------------------------------------------------
# Routes: Stakeholders
# ---------------------------------------------------------------------------


@app.get("/api/opportunities/{opportunity_id}/stakeholders", response_model=list[Stakeholder],
         tags=["Stakeholders"], summary="List stakeholders")
async def list_stakeholders(opportunity_id: str, pipeline: DealPipeline = Depends(get_pipeline)):
    return await pipeline.list_stakeholders(opportunity_id)


@app.post("/api/opportunities/{opportunity_id}/stakeholders", response_model=Stakeholder, status_code=201,
          tags=["Stakeholders"], summary="Add a stakeholder")
async def add_stakeholder(
    opportunity_id: str, body: StakeholderCreate, pipeline: DealPipeline = Depends(get_pipeline),
):
    return await pipeline.add_stakeholder(opportunity_id, body)


@app.patch("/api/opportunities/{opportunity_id}/stakeholders/{stakeholder_id}", response_model=Stakeholder,
           tags=["Stakeholders"], summary="Update a stakeholder")
async def update_stakeholder(
    opportunity_id: str, stakeholder_id: str, body: StakeholderUpdate,
    pipeline: DealPipeline = Depends(get_pipeline),
):
    return await pipeline.update_stakeholder(opportunity_id, stakeholder_id, body)


# ---------------------------------------------------------------------------
# Routes: Communications
# ---------------------------------------------------------------------------


@app.get("/api/opportunities/{opportunity_id}/communications", response_model=list[Communication],
         tags=["Communications"], summary="Communications, most recent first")
async def list_communications(
    opportunity_id: str, limit: int | None = Query(None, ge=1),
    pipeline: DealPipeline = Depends(get_pipeline),
):
    return await pipeline.list_communications(opportunity_id, limit)


@app.post("/api/opportunities/{opportunity_id}/communications", response_model=Communication,
          status_code=201, tags=["Communications"], summary="Record a communication")
async def add_communication(
    opportunity_id: str, body: CommunicationCreate, pipeline: DealPipeline = Depends(get_pipeline),
):
    return await pipeline.add_communication(opportunity_id, body)


@app.post("/api/opportunities/{opportunity_id}/communications/{communication_id}/processed",
          response_model=Communication, tags=["Communications"],
          summary="Mark processed and fold its insights into intelligence")
async def mark_processed(
    opportunity_id: str, communication_id: str, body: MarkProcessed,
    pipeline: DealPipeline = Depends(get_pipeline),
):
    return await pipeline.mark_processed(opportunity_id, communication_id, body.insights)


# ---------------------------------------------------------------------------
# Routes: Portfolio
# ---------------------------------------------------------------------------


@app.get("/api/portfolio", response_model=PortfolioSummary,
         tags=["Portfolio"], summary="Pipeline metrics, prioritized list and stage distribution")
async def portfolio(pipeline: DealPipeline = Depends(get_pipeline)):
    return await pipeline.get_portfolio_summary()


@app.get("/api/portfolio/weekly-focus", response_model=WeeklyFocus,
         tags=["Portfolio"], summary="Up to five actions for this week")
async def weekly_focus(pipeline: DealPipeline = Depends(get_pipeline)):
    return await pipeline.get_weekly_focus()


# ---------------------------------------------------------------------------
# Routes: Admin
# ---------------------------------------------------------------------------


@app.post("/api/admin/rebuild-index", tags=["Admin"], summary="Regenerate the portfolio index from records")
async def rebuild_index(pipeline: DealPipeline = Depends(get_pipeline)):
    count = await pipeline.rebuild_index()
    return {"ok": True, "entries": count}


# ---------------------------------------------------------------------------
# Startup
# ---------------------------------------------------------------------------


def main():
    import uvicorn
    uvicorn.run("dealpilot.app:app", host="127.0.0.1", port=8002, reload=True)


if __name__ == "__main__":
    main()
