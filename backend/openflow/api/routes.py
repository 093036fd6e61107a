"""REST API routes."""
import asyncio
import uuid
from dataclasses import asdict
from logging import getLogger

from fastapi import APIRouter, Body, Depends, HTTPException

from ..config import settings
from ..engine.dispatch import InstanceDispatcher
from ..engine.errors import (
    ExecutionError, GraphInvalid, IntegrationError, InvalidType, NotFound,
    NotPermittedInMode, OpenFlowError, RecordNotFound, StructuralError, UnknownMode,
)
from ..engine.graph import Graph
from ..engine.mode import MODE_CAPABILITIES, Mode, ModePolicy, Operation
from ..engine.persistence import JsonFilePersistence, PersistenceAdapter
from ..engine.session import EditorSession, create_session, get_session
from ..models.schemas import (
    AdvanceResponse, ChangeSchema, GraphSchema, InstanceSchema, InstantiateRequest,
    OperationSchema, OutcomeRequest, ParameterRequest, RevisionResponse,
    SessionRequest, SessionResponse, ViolationSchema,
    graph_to_schema, instance_to_schema, schema_to_graph,
)
from ..shapes.registry import ShapeRegistry
from .websocket import manager

logger = getLogger(__name__)

router = APIRouter(prefix="/api")

_persistence: PersistenceAdapter = JsonFilePersistence(
    settings.definitions_dir, settings.instances_dir,
)
_dispatchers: dict[str, InstanceDispatcher] = {}
_instance_sessions: dict[str, str] = {}  # instance id -> owning session id
_background: set[asyncio.Task] = set()


def get_persistence() -> PersistenceAdapter:
    return _persistence


def _http_error(exc: OpenFlowError) -> HTTPException:
    if isinstance(exc, (NotFound, RecordNotFound)):
        return HTTPException(status_code=404, detail=str(exc))
    if isinstance(exc, NotPermittedInMode):
        return HTTPException(status_code=403, detail=str(exc))
    if isinstance(exc, (UnknownMode, InvalidType)):
        return HTTPException(status_code=422, detail=str(exc))
    if isinstance(exc, GraphInvalid):
        return HTTPException(status_code=409, detail={
            "message": "Graph validation failed",
            "violations": [_violation(v).model_dump() for v in exc.violations],
        })
    if isinstance(exc, (StructuralError, ExecutionError)):
        return HTTPException(status_code=409, detail=str(exc))
    if isinstance(exc, IntegrationError):
        logger.warning("persistence failure: %s", exc)
        return HTTPException(status_code=503, detail=str(exc))
    return HTTPException(status_code=400, detail=str(exc))


def _violation(v) -> ViolationSchema:
    return ViolationSchema(**asdict(v))


def _session(session_id: str) -> EditorSession:
    session = get_session(session_id)
    if session is None:
        raise HTTPException(status_code=404, detail="Session not found")
    return session


def _instance_session(instance_id: str) -> EditorSession:
    session_id = _instance_sessions.get(instance_id)
    if session_id is None:
        raise HTTPException(status_code=404, detail="Instance not found")
    return _session(session_id)


def _dispatcher(session: EditorSession) -> InstanceDispatcher:
    dispatcher = _dispatchers.get(session.session_id)
    if dispatcher is None:
        dispatcher = InstanceDispatcher(session.runner, max_workers=settings.action_workers)
        _dispatchers[session.session_id] = dispatcher
    return dispatcher


def _session_response(session: EditorSession) -> SessionResponse:
    return SessionResponse(
        session_id=session.session_id,
        mode=session.mode.label,
        editable=session.policy.editable,
        capabilities=sorted(c.value for c in session.policy.capabilities),
        revision=session.revision,
        graph=graph_to_schema(session.graph),
    )


def shutdown_dispatchers() -> None:
    for dispatcher in _dispatchers.values():
        dispatcher.shutdown()
    _dispatchers.clear()


# -- catalog ------------------------------------------------------------------

@router.get("/shapes")
async def list_shapes():
    """Return all registered shape definitions."""
    return {name: asdict(defn) for name, defn in ShapeRegistry.all_definitions().items()}


@router.get("/shapes/categories")
async def list_shape_categories():
    """Return shape keys grouped by palette category."""
    return ShapeRegistry.categories()


@router.get("/modes")
async def list_modes():
    return [
        {
            "value": int(mode),
            "label": mode.label,
            "capabilities": sorted(c.value for c in MODE_CAPABILITIES[mode]),
            "editable": ModePolicy(mode).editable,
        }
        for mode in Mode
    ]


# -- flow definitions ---------------------------------------------------------

@router.get("/flows")
async def list_flows(persistence: PersistenceAdapter = Depends(get_persistence)):
    return persistence.list_definitions()


@router.post("/flows")
async def save_flow(
    graph: GraphSchema,
    persistence: PersistenceAdapter = Depends(get_persistence),
):
    """Store a flow definition as-is, e.g. one imported from a file."""
    flow = schema_to_graph(graph)
    try:
        revision = persistence.save_definition(flow)
    except OpenFlowError as exc:
        raise _http_error(exc) from exc
    return {"id": flow.id, "revision": revision}


@router.get("/flows/{flow_id}", response_model=GraphSchema)
async def get_flow(flow_id: str, persistence: PersistenceAdapter = Depends(get_persistence)):
    try:
        return graph_to_schema(persistence.load_definition(flow_id))
    except OpenFlowError as exc:
        raise _http_error(exc) from exc


# -- editor sessions ----------------------------------------------------------

@router.post("/sessions", response_model=SessionResponse)
async def open_session(
    request: SessionRequest,
    persistence: PersistenceAdapter = Depends(get_persistence),
):
    """Open a graph in the given mode.

    The graph comes from the store when ``flow_id`` is set, from the request
    body when ``graph`` is set, and is a new empty flow otherwise.
    """
    loop = asyncio.get_running_loop()
    try:
        mode = Mode.parse(request.mode)
        if request.flow_id:
            graph = persistence.load_definition(request.flow_id)
        elif request.graph is not None:
            graph = schema_to_graph(request.graph)
        else:
            graph = Graph(id=str(uuid.uuid4()))
        session = create_session(graph, mode, request.user)
    except OpenFlowError as exc:
        raise _http_error(exc) from exc
    session.runner.add_listener(manager.make_progress_callback(session.session_id, loop))
    logger.info("session %s opened in %s mode by %s", session.session_id, mode.label, request.user)
    return _session_response(session)


@router.get("/sessions/{session_id}", response_model=SessionResponse)
async def get_session_state(session_id: str):
    session = _session(session_id)
    try:
        session.policy.require(Operation.VIEW)
    except OpenFlowError as exc:
        raise _http_error(exc) from exc
    return _session_response(session)


@router.post("/sessions/{session_id}/operations", response_model=RevisionResponse)
async def apply_operation(session_id: str, operation: OperationSchema = Body(...)):
    session = _session(session_id)
    try:
        revision = session.apply(operation.to_operation())
    except OpenFlowError as exc:
        raise _http_error(exc) from exc
    return RevisionResponse(revision=revision)


@router.post("/sessions/{session_id}/undo", response_model=RevisionResponse)
async def undo_operation(session_id: str):
    session = _session(session_id)
    try:
        revision = session.undo()
    except OpenFlowError as exc:
        raise _http_error(exc) from exc
    return RevisionResponse(revision=revision)


@router.get("/sessions/{session_id}/changes", response_model=list[ChangeSchema])
async def list_changes(session_id: str, since: int = 0):
    session = _session(session_id)
    return [ChangeSchema(**asdict(c)) for c in session.changes_since(since)]


@router.get("/sessions/{session_id}/validate", response_model=list[ViolationSchema])
async def validate_session(session_id: str):
    session = _session(session_id)
    try:
        return [_violation(v) for v in session.validate()]
    except OpenFlowError as exc:
        raise _http_error(exc) from exc


@router.post("/sessions/{session_id}/save")
async def save_session(
    session_id: str,
    persistence: PersistenceAdapter = Depends(get_persistence),
):
    session = _session(session_id)
    try:
        stored = session.save(persistence)
    except OpenFlowError as exc:
        raise _http_error(exc) from exc
    return {"id": session.graph.id, "revision": stored}


@router.post("/sessions/{session_id}/instances", response_model=InstanceSchema)
async def create_instance(session_id: str, request: InstantiateRequest):
    session = _session(session_id)
    try:
        instance = session.instantiate(request.parameters)
    except OpenFlowError as exc:
        raise _http_error(exc) from exc
    _instance_sessions[instance.id] = session.session_id
    return instance_to_schema(instance)


# -- instances ----------------------------------------------------------------

@router.get("/instances/{instance_id}", response_model=InstanceSchema)
async def get_instance(instance_id: str):
    session = _instance_session(instance_id)
    return instance_to_schema(session.runner.get(instance_id))


@router.post("/instances/{instance_id}/parameters", response_model=InstanceSchema)
async def set_instance_parameter(instance_id: str, request: ParameterRequest):
    session = _instance_session(instance_id)
    try:
        session.runner.set_parameter(instance_id, request.name, request.value)
    except OpenFlowError as exc:
        raise _http_error(exc) from exc
    return instance_to_schema(session.runner.get(instance_id))


@router.post("/instances/{instance_id}/advance", response_model=AdvanceResponse)
async def advance_instance(instance_id: str):
    """Start every ready node and run its action inline."""
    session = _instance_session(instance_id)
    if _dispatcher(session).is_active(instance_id):
        raise HTTPException(status_code=409, detail="Instance is being run by the dispatcher")
    loop = asyncio.get_running_loop()
    try:
        started = await loop.run_in_executor(None, session.runner.advance, instance_id)
    except OpenFlowError as exc:
        raise _http_error(exc) from exc
    return AdvanceResponse(started=started, instance=instance_to_schema(session.runner.get(instance_id)))


@router.post("/instances/{instance_id}/run")
async def run_instance(instance_id: str):
    """Drive the instance in the background until it is sealed.

    Progress is delivered over the session's WebSocket.
    """
    session = _instance_session(instance_id)
    dispatcher = _dispatcher(session)
    try:
        session.policy.require(Operation.ADVANCE)
        instance = session.runner.get(instance_id)
    except OpenFlowError as exc:
        raise _http_error(exc) from exc
    if instance.sealed:
        raise HTTPException(status_code=409, detail=f"Instance {instance_id} is sealed")
    if dispatcher.is_active(instance_id):
        raise HTTPException(status_code=409, detail="Instance is already running")

    async def _drive():
        try:
            await dispatcher.run_until_settled(instance_id)
        except OpenFlowError:
            logger.exception("instance %s: dispatcher stopped", instance_id)

    task = asyncio.create_task(_drive())
    _background.add(task)
    task.add_done_callback(_background.discard)
    return {"instance_id": instance_id, "status": "running"}


@router.post("/instances/{instance_id}/outcomes/{node_id}", response_model=InstanceSchema)
async def report_outcome(instance_id: str, node_id: str, request: OutcomeRequest):
    session = _instance_session(instance_id)
    try:
        _dispatcher(session).submit(instance_id, node_id, request.to_outcome())
    except OpenFlowError as exc:
        raise _http_error(exc) from exc
    return instance_to_schema(session.runner.get(instance_id))


@router.post("/instances/{instance_id}/terminate", response_model=InstanceSchema)
async def terminate_instance(instance_id: str):
    session = _instance_session(instance_id)
    try:
        instance = session.runner.terminate(instance_id)
    except OpenFlowError as exc:
        raise _http_error(exc) from exc
    _dispatcher(session).wake(instance_id)
    return instance_to_schema(instance)


@router.post("/instances/{instance_id}/save")
async def save_instance(
    instance_id: str,
    persistence: PersistenceAdapter = Depends(get_persistence),
):
    session = _instance_session(instance_id)
    try:
        session.runner.save_snapshot(instance_id, persistence)
    except OpenFlowError as exc:
        raise _http_error(exc) from exc
    return {"id": instance_id, "status": "saved"}
