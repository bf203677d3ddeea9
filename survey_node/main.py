from contextlib import asynccontextmanager
from typing import List, Optional

import structlog
from fastapi import Depends, FastAPI, Request
from fastapi.responses import JSONResponse
from sse_starlette.sse import EventSourceResponse

from . import __version__
from .config import NODE_ID, PORT
from .errors import SurveyError
from .guard import has_voted
from .ledger import list_votes, normalize_name
from .lifecycle import (
    close_survey,
    create_survey,
    delete_survey,
    edit_survey,
    get_survey,
    list_surveys,
    reopen_survey,
)
from .live import survey_event_stream, survey_results
from .models import HasVoted, Survey, SurveyIn, SurveyResults, Vote, VoteIn
from .observability import configure_logging
from .reconciler import cast_vote, delete_vote, edit_vote, recount_survey
from .store import DocumentStore

log = structlog.get_logger(__name__)

store = DocumentStore()


def get_store() -> DocumentStore:
    return store


@asynccontextmanager
async def lifespan(app: FastAPI):
    configure_logging()
    log.info("node_started", version=__version__)
    yield


app = FastAPI(
    title=f"Survey Node ({NODE_ID})",
    version=__version__,
    lifespan=lifespan,
)


@app.exception_handler(SurveyError)
async def survey_error_handler(request: Request, exc: SurveyError):
    log.info("request_rejected", path=request.url.path, error=exc.code, detail=exc.message)
    return JSONResponse(
        status_code=exc.status_code,
        content={"error": exc.code, "detail": exc.message, "node": NODE_ID},
    )


@app.get("/health")
def health(db: DocumentStore = Depends(get_store)):
    return {"ok": True, "node": NODE_ID, "version": __version__, "watches": db.watch_count}


# ----------- surveys -----------

@app.get("/surveys", response_model=List[Survey])
async def surveys_index(db: DocumentStore = Depends(get_store)):
    return await list_surveys(db)


@app.post("/surveys", response_model=Survey, status_code=201)
async def surveys_create(body: SurveyIn, db: DocumentStore = Depends(get_store)):
    return await create_survey(db, body.question, body.options)


@app.get("/surveys/{survey_id}", response_model=Survey)
async def surveys_show(survey_id: str, db: DocumentStore = Depends(get_store)):
    return await get_survey(db, survey_id)


@app.put("/surveys/{survey_id}", response_model=Survey)
async def surveys_edit(survey_id: str, body: SurveyIn, db: DocumentStore = Depends(get_store)):
    return await edit_survey(db, survey_id, body.question, body.options)


@app.post("/surveys/{survey_id}/close", response_model=Survey)
async def surveys_close(survey_id: str, db: DocumentStore = Depends(get_store)):
    return await close_survey(db, survey_id)


@app.post("/surveys/{survey_id}/reopen", response_model=Survey)
async def surveys_reopen(survey_id: str, db: DocumentStore = Depends(get_store)):
    return await reopen_survey(db, survey_id)


@app.delete("/surveys/{survey_id}")
async def surveys_delete(survey_id: str, db: DocumentStore = Depends(get_store)):
    removed = await delete_survey(db, survey_id)
    return {"ok": True, "node": NODE_ID, "survey_id": survey_id, "votes_removed": removed}


@app.get("/surveys/{survey_id}/results", response_model=SurveyResults)
async def surveys_results(survey_id: str, db: DocumentStore = Depends(get_store)):
    return survey_results(await get_survey(db, survey_id))


@app.post("/surveys/{survey_id}/recount", response_model=Survey)
async def surveys_recount(survey_id: str, db: DocumentStore = Depends(get_store)):
    return await recount_survey(db, survey_id)


# ----------- votes -----------

@app.get("/surveys/{survey_id}/votes", response_model=List[Vote])
async def votes_index(survey_id: str, search: Optional[str] = None, db: DocumentStore = Depends(get_store)):
    return await list_votes(db, survey_id, search)


@app.get("/surveys/{survey_id}/has-voted", response_model=HasVoted)
async def votes_check(survey_id: str, name: str, mobile: str, db: DocumentStore = Depends(get_store)):
    voted = await has_voted(db, survey_id, normalize_name(name), mobile.strip())
    return HasVoted(survey_id=survey_id, has_voted=voted)


@app.post("/surveys/{survey_id}/votes", response_model=Vote, status_code=201)
async def votes_cast(survey_id: str, body: VoteIn, db: DocumentStore = Depends(get_store)):
    return await cast_vote(db, survey_id, body.name, body.mobile, body.option_id)


@app.put("/votes/{vote_id}", response_model=Vote)
async def votes_edit(vote_id: str, body: VoteIn, db: DocumentStore = Depends(get_store)):
    return await edit_vote(db, vote_id, body.name, body.mobile, body.option_id)


@app.delete("/votes/{vote_id}")
async def votes_delete(vote_id: str, db: DocumentStore = Depends(get_store)):
    vote = await delete_vote(db, vote_id)
    return {"ok": True, "node": NODE_ID, "vote_id": vote_id, "survey_id": vote.survey_id}


# ----------- live stream -----------

@app.get("/surveys/{survey_id}/stream")
async def surveys_stream(survey_id: str, db: DocumentStore = Depends(get_store)) -> EventSourceResponse:
    """
    Server-Sent Events for one survey: ``survey`` (results) and ``votes``
    (roster) on connect and after every change, then ``deleted``.
    """
    await get_survey(db, survey_id)
    return EventSourceResponse(
        survey_event_stream(db, survey_id),
        headers={"X-Accel-Buffering": "no", "Cache-Control": "no-cache"},
    )


if __name__ == "__main__":
    import uvicorn
    uvicorn.run("survey_node.main:app", host="0.0.0.0", port=PORT, log_level="info")
