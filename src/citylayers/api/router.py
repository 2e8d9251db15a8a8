"""Layer authoring API: drive an authoring session over HTTP.

Endpoints (prefix /api/layers/authoring):
    POST   /sessions                              Start a session (optionally editing a layer)
    GET    /sessions/{sid}                        Current session state
    POST   /sessions/{sid}/identity               Set name/icon/domain, returns inline name error
    POST   /sessions/{sid}/identity/confirm       Step 1 -> 2
    POST   /sessions/{sid}/source                 Step 2 -> 3 (upload | draw)
    POST   /sessions/{sid}/append-mode            Append vs replace for the next upload
    POST   /sessions/{sid}/upload                 Multipart file selection
    POST   /sessions/{sid}/canvas/{role}/created  A shape was drawn
    POST   /sessions/{sid}/canvas/{role}/edited   Canvas geometry changed
    POST   /sessions/{sid}/canvas/{role}/deleted  Canvas shapes were removed
    POST   /sessions/{sid}/features/{fid}/rename  Rename one feature
    POST   /sessions/{sid}/add-more               Step 4 -> 3 (upload, append)
    POST   /sessions/{sid}/back                   One step back
    POST   /sessions/{sid}/save                   Persist the layer
    DELETE /sessions/{sid}                        Close the session
"""

from __future__ import annotations

import uuid
from contextlib import contextmanager

from fastapi import APIRouter, File, Form, HTTPException, UploadFile
from loguru import logger
from pydantic import BaseModel

from citylayers.authoring.canvas import CanvasRole, CanvasShape
from citylayers.authoring.session import AuthoringStateMachine, DataSource
from citylayers.config import settings
from citylayers.errors import InvalidTransition, LayerAuthoringError, PersistenceError
from citylayers.layers.formats import UploadedFile
from citylayers.layers.store import JsonLayerStore

router = APIRouter(prefix="/api/layers/authoring", tags=["layers"])

# Live sessions, keyed by session id
_sessions: dict[str, AuthoringStateMachine] = {}


class EditTarget(BaseModel):
    domain: str
    layer_name: str
    icon: str | None = None


class CreateSession(BaseModel):
    city_name: str
    boundary: dict | str | None = None
    edit: EditTarget | None = None


class IdentityRequest(BaseModel):
    name: str
    domain: str
    icon: str | None = None
    custom: bool = True


class SourceRequest(BaseModel):
    source: DataSource


class AppendModeRequest(BaseModel):
    append_mode: bool


class ShapeModel(BaseModel):
    shape_id: str | None = None
    geometry: dict

    def to_shape(self) -> CanvasShape:
        return CanvasShape(shape_id=self.shape_id, geometry=self.geometry)


class ShapesRequest(BaseModel):
    shapes: list[ShapeModel]


class RenameRequest(BaseModel):
    name: str


def _status_for(error: LayerAuthoringError) -> int:
    if isinstance(error, PersistenceError):
        return 502
    if isinstance(error, InvalidTransition):
        return 409
    return 400


@contextmanager
def _authoring_errors():
    """Turn authoring errors into HTTP errors carrying kind and message."""
    try:
        yield
    except LayerAuthoringError as e:
        raise HTTPException(
            status_code=_status_for(e),
            detail={"kind": e.kind.value, "message": e.message},
        ) from e


def _get_session(session_id: str) -> AuthoringStateMachine:
    machine = _sessions.get(session_id)
    if machine is None:
        raise HTTPException(404, f"Unknown authoring session: {session_id}")
    return machine


def _state(session_id: str, machine: AuthoringStateMachine) -> dict:
    return {"session_id": session_id, **machine.session.to_dict()}


@router.post("/sessions")
async def create_session(body: CreateSession) -> dict:
    """Start a session for a city, optionally reopening a saved layer."""
    store = JsonLayerStore(settings.storage_path, body.city_name)
    try:
        machine = AuthoringStateMachine(
            body.city_name,
            store,
            boundary=body.boundary,
            existing_layers=store.existing_layers(),
        )
    except ValueError as e:
        raise HTTPException(400, f"Invalid city boundary: {e}")

    if body.edit is not None:
        with _authoring_errors():
            await machine.open_for_edit(body.edit.domain, body.edit.layer_name, body.edit.icon)

    session_id = uuid.uuid4().hex
    _sessions[session_id] = machine
    logger.info(f"Authoring session {session_id} opened for {body.city_name}")
    return _state(session_id, machine)


@router.get("/sessions/{session_id}")
async def get_session(session_id: str) -> dict:
    return _state(session_id, _get_session(session_id))


@router.post("/sessions/{session_id}/identity")
async def set_identity(session_id: str, body: IdentityRequest) -> dict:
    """Record the identity. The name error, if any, is returned inline."""
    machine = _get_session(session_id)
    with _authoring_errors():
        error = machine.set_identity(body.name, body.domain, icon=body.icon, custom=body.custom)
    return {"name_error": error, **_state(session_id, machine)}


@router.post("/sessions/{session_id}/identity/confirm")
async def confirm_identity(session_id: str) -> dict:
    machine = _get_session(session_id)
    with _authoring_errors():
        machine.confirm_identity()
    return _state(session_id, machine)


@router.post("/sessions/{session_id}/source")
async def choose_source(session_id: str, body: SourceRequest) -> dict:
    machine = _get_session(session_id)
    with _authoring_errors():
        machine.choose_source(body.source)
    return _state(session_id, machine)


@router.post("/sessions/{session_id}/append-mode")
async def set_append_mode(session_id: str, body: AppendModeRequest) -> dict:
    machine = _get_session(session_id)
    machine.set_append_mode(body.append_mode)
    return _state(session_id, machine)


@router.post("/sessions/{session_id}/upload")
async def upload_files(
    session_id: str,
    files: list[UploadFile] = File(...),
    append_mode: bool | None = Form(None),
) -> dict:
    """Run a file selection through the ingestion pipeline."""
    machine = _get_session(session_id)
    uploaded = []
    for f in files:
        content = await f.read()
        if len(content) > settings.max_upload_bytes:
            raise HTTPException(413, f"{f.filename} exceeds the upload limit")
        uploaded.append(UploadedFile(name=f.filename or "", content=content))

    if append_mode is not None:
        machine.set_append_mode(append_mode)
    with _authoring_errors():
        await machine.upload(uploaded)
    return _state(session_id, machine)


@router.post("/sessions/{session_id}/canvas/{role}/created")
async def canvas_created(session_id: str, role: CanvasRole, body: ShapeModel) -> dict:
    machine = _get_session(session_id)
    with _authoring_errors():
        machine.feature_created(body.to_shape(), role)
    return _state(session_id, machine)


@router.post("/sessions/{session_id}/canvas/{role}/edited")
async def canvas_edited(session_id: str, role: CanvasRole, body: ShapesRequest) -> dict:
    machine = _get_session(session_id)
    with _authoring_errors():
        machine.features_edited([s.to_shape() for s in body.shapes], role)
    return _state(session_id, machine)


@router.post("/sessions/{session_id}/canvas/{role}/deleted")
async def canvas_deleted(session_id: str, role: CanvasRole, body: ShapesRequest) -> dict:
    machine = _get_session(session_id)
    with _authoring_errors():
        machine.features_deleted([s.to_shape() for s in body.shapes], role)
    return _state(session_id, machine)


@router.post("/sessions/{session_id}/features/{feature_id}/rename")
async def rename_feature(session_id: str, feature_id: str, body: RenameRequest) -> dict:
    machine = _get_session(session_id)
    with _authoring_errors():
        try:
            machine.rename_feature(feature_id, body.name)
        except KeyError:
            raise HTTPException(404, f"Unknown feature: {feature_id}")
    return _state(session_id, machine)


@router.post("/sessions/{session_id}/add-more")
async def add_more_features(session_id: str) -> dict:
    machine = _get_session(session_id)
    with _authoring_errors():
        machine.add_more_features()
    return _state(session_id, machine)


@router.post("/sessions/{session_id}/back")
async def go_back(session_id: str) -> dict:
    machine = _get_session(session_id)
    with _authoring_errors():
        machine.go_back()
    return _state(session_id, machine)


@router.post("/sessions/{session_id}/save")
async def save_layer(session_id: str) -> dict:
    """Persist the layer. The session is reset but stays open."""
    machine = _get_session(session_id)
    with _authoring_errors():
        record, notices = await machine.save()
    return {
        "layer": record.to_dict(),
        "notices": [n.to_dict() for n in notices],
        **_state(session_id, machine),
    }


@router.delete("/sessions/{session_id}")
async def close_session(session_id: str) -> dict:
    machine = _get_session(session_id)
    machine.close()
    del _sessions[session_id]
    return {"status": "closed", "session_id": session_id}
