# splitit/api.py
import uuid
from decimal import Decimal
from typing import Any, Dict, List

from fastapi import Depends, FastAPI, File, HTTPException, UploadFile, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from loguru import logger
from pydantic import BaseModel, Field

from . import config
from .errors import ValidationError, WorkflowError
from .gemini_ocr import GeminiReceiptExtractor
from .split_logic import BillTotals, MemberSummary, is_consistent, summarize
from .workflow import WorkflowController

security_scheme = HTTPBearer()


async def get_api_key(credentials: HTTPAuthorizationCredentials = Depends(security_scheme)):
    # Expecting a Bearer token that matches the API_KEY
    expected = config.get_api_key()
    if not expected:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail="API_KEY is not configured on the server.")
    if credentials.scheme != "Bearer" or credentials.credentials != expected:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid or missing API Key",
            headers={"WWW-Authenticate": "Bearer"},
        )
    return credentials.credentials


class SessionStore:
    """In-memory bill sessions. Nothing survives a restart."""

    def __init__(self):
        self._sessions: Dict[str, WorkflowController] = {}

    def create(self, controller: WorkflowController) -> str:
        session_id = uuid.uuid4().hex[:12]
        self._sessions[session_id] = controller
        return session_id

    def get(self, session_id: str) -> WorkflowController:
        controller = self._sessions.get(session_id)
        if controller is None:
            raise HTTPException(status_code=404, detail=f"Session '{session_id}' not found.")
        return controller

    def delete(self, session_id: str) -> None:
        self._sessions.pop(session_id, None)


_store = SessionStore()


def get_session_store() -> SessionStore:
    return _store


def get_extractor():
    return GeminiReceiptExtractor()


# --- FastAPI App Instance ---
app = FastAPI(
    title="SplitIt API",
    description="API for uploading receipts, assigning items to people, and calculating each person's share.",
    version="1.0.0",
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# Pydantic models for request/response bodies
class SessionResponse(BaseModel):
    session_id: str
    state: Dict[str, Any]


class AddMemberRequest(BaseModel):
    name: str


class TipRateRequest(BaseModel):
    tip_rate: Decimal = Field(description="Tip as a percentage of each member's subtotal")


class SummaryResponse(BaseModel):
    summaries: List[MemberSummary]
    totals: BillTotals
    tip_rate: Decimal


class SettlementResponse(BaseModel):
    member_id: str
    member_name: str
    amount: Decimal
    payment_link: str
    simulated: bool = True


def _run(action, *args):
    """Call a controller action, mapping domain errors to HTTP errors."""
    try:
        return action(*args)
    except WorkflowError as e:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(e))
    except ValidationError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))


def _session_response(session_id: str, controller: WorkflowController) -> SessionResponse:
    return SessionResponse(session_id=session_id, state=controller.snapshot())


# --- API Endpoints ---

@app.post("/sessions", response_model=SessionResponse, status_code=201)
async def create_session(store: SessionStore = Depends(get_session_store), extractor=Depends(get_extractor),
                         api_key: str = Depends(get_api_key)):
    controller = WorkflowController(extractor)
    session_id = store.create(controller)
    logger.info(f"Created bill session {session_id}")
    return _session_response(session_id, controller)


@app.get("/sessions/{session_id}", response_model=SessionResponse)
async def get_session(session_id: str, store: SessionStore = Depends(get_session_store), api_key: str = Depends(get_api_key)):
    return _session_response(session_id, store.get(session_id))


@app.delete("/sessions/{session_id}", status_code=204)
async def delete_session(session_id: str, store: SessionStore = Depends(get_session_store), api_key: str = Depends(get_api_key)):
    store.get(session_id)
    store.delete(session_id)
    logger.info(f"Deleted bill session {session_id}")


@app.post("/sessions/{session_id}/upload-receipt", response_model=SessionResponse)
async def upload_receipt(session_id: str, file: UploadFile = File(...), store: SessionStore = Depends(get_session_store),
                         api_key: str = Depends(get_api_key)):
    controller = store.get(session_id)
    max_bytes = config.get_max_image_size_bytes()
    raw_image_bytes = await file.read()
    if len(raw_image_bytes) > max_bytes:
        raise HTTPException(status_code=400, detail=f"Image too large ({len(raw_image_bytes) / (1024*1024):.2f} MB). Max {max_bytes / (1024*1024):.0f} MB.")
    if not raw_image_bytes:
        raise HTTPException(status_code=400, detail="Uploaded file is empty.")

    try:
        succeeded = await controller.submit_receipt(raw_image_bytes)
    except WorkflowError as e:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(e))
    if not succeeded and controller.error:
        raise HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail=controller.error)
    return _session_response(session_id, controller)


@app.post("/sessions/{session_id}/members", response_model=SessionResponse, status_code=201)
async def add_member(session_id: str, request: AddMemberRequest, store: SessionStore = Depends(get_session_store),
                     api_key: str = Depends(get_api_key)):
    controller = store.get(session_id)
    _run(controller.add_member, request.name)
    return _session_response(session_id, controller)


@app.delete("/sessions/{session_id}/members/{member_id}", response_model=SessionResponse)
async def remove_member(session_id: str, member_id: str, store: SessionStore = Depends(get_session_store),
                        api_key: str = Depends(get_api_key)):
    controller = store.get(session_id)
    if not _run(controller.remove_member, member_id):
        raise HTTPException(status_code=404, detail=f"Member '{member_id}' not found.")
    return _session_response(session_id, controller)


@app.post("/sessions/{session_id}/items/{item_id}/assignees/{member_id}", response_model=SessionResponse)
async def toggle_assignment(session_id: str, item_id: str, member_id: str, store: SessionStore = Depends(get_session_store),
                            api_key: str = Depends(get_api_key)):
    controller = store.get(session_id)
    if not _run(controller.toggle_assignment, item_id, member_id):
        raise HTTPException(status_code=404, detail=f"Item '{item_id}' or member '{member_id}' not found.")
    return _session_response(session_id, controller)


@app.put("/sessions/{session_id}/tip", response_model=SessionResponse)
async def set_tip_rate(session_id: str, request: TipRateRequest, store: SessionStore = Depends(get_session_store),
                       api_key: str = Depends(get_api_key)):
    controller = store.get(session_id)
    _run(controller.set_tip_rate, request.tip_rate)
    return _session_response(session_id, controller)


@app.post("/sessions/{session_id}/advance", response_model=SessionResponse)
async def advance(session_id: str, store: SessionStore = Depends(get_session_store), api_key: str = Depends(get_api_key)):
    controller = store.get(session_id)
    _run(controller.advance)
    return _session_response(session_id, controller)


@app.post("/sessions/{session_id}/back", response_model=SessionResponse)
async def back(session_id: str, store: SessionStore = Depends(get_session_store), api_key: str = Depends(get_api_key)):
    controller = store.get(session_id)
    _run(controller.back)
    return _session_response(session_id, controller)


@app.post("/sessions/{session_id}/reset", response_model=SessionResponse)
async def reset(session_id: str, store: SessionStore = Depends(get_session_store), api_key: str = Depends(get_api_key)):
    controller = store.get(session_id)
    controller.reset()
    return _session_response(session_id, controller)


@app.get("/sessions/{session_id}/summary", response_model=SummaryResponse)
async def get_summary(session_id: str, store: SessionStore = Depends(get_session_store), api_key: str = Depends(get_api_key)):
    controller = store.get(session_id)
    summaries = _run(controller.summary)
    return SummaryResponse(summaries=summaries, totals=summarize(summaries), tip_rate=controller.bill.tip_rate)


@app.post("/sessions/{session_id}/settle/{member_id}", response_model=SettlementResponse)
async def settle(session_id: str, member_id: str, store: SessionStore = Depends(get_session_store),
                 api_key: str = Depends(get_api_key)):
    controller = store.get(session_id)
    summary = _run(controller.member_summary, member_id)
    if summary is None:
        raise HTTPException(status_code=404, detail=f"Member '{member_id}' not found.")
    if not is_consistent(summary):
        logger.error(f"Refusing to settle inconsistent summary for {member_id}: {summary}")
        raise HTTPException(status_code=500, detail="Member summary does not add up.")

    # Settlement is simulated: the link identifies the payment, nothing is charged
    payment_link = f"{config.get_app_base_url()}/pay/{session_id}/{member_id}?amount={summary.total}"
    logger.info(f"Simulating payment link for {summary.member_name}: ${summary.total}")
    return SettlementResponse(
        member_id=summary.member_id,
        member_name=summary.member_name,
        amount=summary.total,
        payment_link=payment_link,
    )


@app.get("/")
async def read_root():
    return {"message": "SplitIt API is running"}
