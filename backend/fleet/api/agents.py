"""
Agents API Routes
=================

Thin REST and WebSocket surface over the agent runtime.

Endpoints:
- GET    /api/v1/agents                 - List agents
- POST   /api/v1/agents                 - Create agent
- POST   /api/v1/agents/reconcile       - Reconcile every agent now
- GET    /api/v1/agents/{id}            - Agent details with process diagnostics
- DELETE /api/v1/agents/{id}            - Stop and remove agent
- POST   /api/v1/agents/{id}/command    - Dispatch a command (inject or spawn)
- POST   /api/v1/agents/{id}/stop       - Stop the agent's process
- GET    /api/v1/agents/{id}/history    - Session transcript page
- GET    /api/v1/agents/{id}/output     - Process output since a byte offset
- WS     /api/v1/agents/ws              - Orchestrator event stream
"""

import asyncio
from typing import Optional, List, Dict, Any

import structlog
from fastapi import APIRouter, Depends, HTTPException, Query, WebSocket, WebSocketDisconnect, status
from fastapi.encoders import jsonable_encoder
from pydantic import BaseModel, Field

from fleet.core.config import settings
from fleet.core.runtime.agents import (
    AgentBackend,
    AgentBusyError,
    AgentNotFoundError,
    AgentStatus,
    CodexOptions,
    PermissionMode,
    SpawnFailure,
)
from fleet.core.runtime.context import OrchestratorEvent
from fleet.core.runtime.service import AgentRuntime, get_runtime

logger = structlog.get_logger()

router = APIRouter(prefix="/agents", tags=["agents"])


# ==========================================================================
# Schemas
# ==========================================================================

class CodexOptionsModel(BaseModel):
    """Codex invocation options."""
    full_auto: bool = Field(True, description="Bypass approvals and sandbox")
    approval_mode: Optional[str] = Field(None, description="--ask-for-approval value when not full-auto")
    sandbox: Optional[str] = Field(None, description="--sandbox value when not full-auto")
    search: bool = Field(False, description="Enable web search")
    profile: Optional[str] = Field(None, description="Codex config profile")


class CreateAgentRequest(BaseModel):
    """Request to create a new agent."""
    name: str = Field(..., description="Display name")
    cwd: str = Field(..., description="Working directory of the agent's process")
    backend: AgentBackend = Field(AgentBackend.CLAUDE, description="External agent CLI")
    model: Optional[str] = Field(None, description="Model passed to the CLI")
    permission_mode: PermissionMode = Field(PermissionMode.BYPASS, description="Tool permission handling")
    use_chrome: bool = Field(False, description="Enable the Claude browser integration")
    system_prompt: Optional[str] = Field(None, description="Instructions appended to every run")
    is_coordinator: bool = Field(False, description="Scan completed turns for directive blocks")
    agent_class: Optional[str] = Field(None, description="Agent class label")
    codex: Optional[CodexOptionsModel] = None


class CommandRequest(BaseModel):
    """Request to dispatch a command to an agent."""
    command: str = Field(..., min_length=1, description="Text to send to the agent")
    system_prompt: Optional[str] = Field(None, description="Override the agent's system prompt for a spawn")
    force_new_session: bool = Field(False, description="Start a fresh session instead of resuming")
    silent: bool = Field(False, description="Maintenance command that leaves agent state untouched")


class StopRequest(BaseModel):
    """Request to stop an agent."""
    interrupt_only: bool = Field(False, description="Send SIGINT to the CLI without stopping it")


class LastErrorResponse(BaseModel):
    kind: str
    message: str
    timestamp: str


class AgentResponse(BaseModel):
    """Agent record."""
    id: str
    name: str
    backend: str
    cwd: str
    status: str
    session_id: Optional[str]
    model: Optional[str]
    permission_mode: str
    is_coordinator: bool
    agent_class: Optional[str]
    subordinate_ids: List[str]
    current_task: Optional[str]
    current_tool: Optional[str]
    last_assigned_task: Optional[str]
    last_assigned_task_time: Optional[str]
    task_count: int
    tokens_used: int
    context_used: int
    context_limit: int
    restart_count: int
    last_error: Optional[LastErrorResponse]
    created_at: str

    class Config:
        from_attributes = True


class AgentDetailResponse(AgentResponse):
    """Agent record plus live process diagnostics."""
    process: Optional[Dict[str, Any]]
    memory_mb: Optional[int]
    coordinator_id: Optional[str]
    subagents: List[Dict[str, Any]]


class CommandResponse(BaseModel):
    agent_id: str
    mode: str
    status: str


class HistoryMessage(BaseModel):
    type: str
    content: str
    timestamp: Optional[str]
    uuid: Optional[str] = None
    tool_name: Optional[str] = None
    tool_input: Optional[Dict[str, Any]] = None
    tool_use_id: Optional[str] = None


class HistoryResponse(BaseModel):
    """One page of an agent's session transcript."""
    agent_id: str
    session_id: Optional[str]
    messages: List[HistoryMessage]
    total_count: int
    has_more: bool


class OutputResponse(BaseModel):
    """Raw process output since an offset."""
    agent_id: str
    lines: List[str]
    offset: int


class ReconcileResponse(BaseModel):
    changed: Dict[str, str]


# ==========================================================================
# Dependencies
# ==========================================================================

def get_agent_runtime() -> AgentRuntime:
    """Runtime singleton started by the application lifespan."""
    return get_runtime()


def _not_found(error: AgentNotFoundError) -> HTTPException:
    return HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(error))


# ==========================================================================
# Endpoints
# ==========================================================================

@router.get("", response_model=List[AgentResponse])
async def list_agents(
    status_filter: Optional[AgentStatus] = None,
    runtime: AgentRuntime = Depends(get_agent_runtime),
):
    """List agents, optionally filtered by status."""
    return [agent.to_dict() for agent in runtime.context.list_agents(status_filter)]


@router.post("", response_model=AgentResponse, status_code=status.HTTP_201_CREATED)
async def create_agent(
    request: CreateAgentRequest,
    runtime: AgentRuntime = Depends(get_agent_runtime),
):
    """Register a new agent. No process is started until it receives a command."""
    options: Dict[str, Any] = {
        "model": request.model,
        "permission_mode": request.permission_mode,
        "use_chrome": request.use_chrome,
        "system_prompt": request.system_prompt,
        "is_coordinator": request.is_coordinator,
        "agent_class": request.agent_class,
    }
    if request.codex is not None:
        options["codex"] = CodexOptions(**request.codex.model_dump())
    agent = runtime.create_agent(request.name, request.cwd, request.backend, **options)
    return agent.to_dict()


@router.post("/reconcile", response_model=ReconcileResponse)
async def reconcile_agents(runtime: AgentRuntime = Depends(get_agent_runtime)):
    """Recompute every agent's status from process, transcript and OS signals."""
    changed = await runtime.reconciler.reconcile_all()
    return ReconcileResponse(changed={agent_id: s.value for agent_id, s in changed.items()})


@router.get("/{agent_id}", response_model=AgentDetailResponse)
async def get_agent(agent_id: str, runtime: AgentRuntime = Depends(get_agent_runtime)):
    """Get an agent with live process diagnostics."""
    try:
        return runtime.agent_info(agent_id)
    except AgentNotFoundError as e:
        raise _not_found(e)


@router.delete("/{agent_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_agent(agent_id: str, runtime: AgentRuntime = Depends(get_agent_runtime)):
    """Stop the agent's process and remove the agent."""
    try:
        await runtime.delete_agent(agent_id)
    except AgentNotFoundError as e:
        raise _not_found(e)


@router.post("/{agent_id}/command", response_model=CommandResponse, status_code=status.HTTP_202_ACCEPTED)
async def send_command(
    agent_id: str,
    request: CommandRequest,
    runtime: AgentRuntime = Depends(get_agent_runtime),
):
    """
    Dispatch a command.

    Injected on stdin when the agent's process is running and accepts it;
    otherwise a new process is spawned that resumes the agent's session.
    """
    try:
        if request.silent:
            sent = await runtime.dispatcher.send_silent_command(agent_id, request.command)
            mode = "silent" if sent else "skipped"
        else:
            if runtime.context.require_agent(agent_id).is_coordinator:
                runtime.router.record_coordinator_command(agent_id, request.command)
            dispatched = await runtime.dispatcher.send_command(
                agent_id,
                request.command,
                system_prompt=request.system_prompt,
                force_new_session=request.force_new_session,
            )
            mode = dispatched.value
    except AgentNotFoundError as e:
        raise _not_found(e)
    except AgentBusyError as e:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(e))
    except SpawnFailure as e:
        raise HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail=str(e))

    agent = runtime.context.require_agent(agent_id)
    return CommandResponse(agent_id=agent_id, mode=mode, status=agent.status.value)


@router.post("/{agent_id}/stop", response_model=AgentResponse)
async def stop_agent(
    agent_id: str,
    request: Optional[StopRequest] = None,
    runtime: AgentRuntime = Depends(get_agent_runtime),
):
    """Stop (or just interrupt) the agent's process."""
    try:
        if request is not None and request.interrupt_only:
            runtime.dispatcher.interrupt_agent(agent_id)
        else:
            await runtime.dispatcher.stop_agent(agent_id)
        return runtime.context.require_agent(agent_id).to_dict()
    except AgentNotFoundError as e:
        raise _not_found(e)


@router.get("/{agent_id}/history", response_model=HistoryResponse)
async def get_history(
    agent_id: str,
    limit: int = Query(50, ge=1, le=500),
    offset: int = Query(0, ge=0),
    runtime: AgentRuntime = Depends(get_agent_runtime),
):
    """Page through the agent's session transcript, newest page first."""
    try:
        agent = runtime.context.require_agent(agent_id)
    except AgentNotFoundError as e:
        raise _not_found(e)

    history = None
    if agent.session_id:
        history = runtime.transcripts.load_session(agent.cwd, agent.session_id, limit, offset)
    if history is None:
        return HistoryResponse(agent_id=agent_id, session_id=agent.session_id, messages=[],
                               total_count=0, has_more=False)

    return HistoryResponse(
        agent_id=agent_id,
        session_id=agent.session_id,
        messages=[HistoryMessage(**m.to_dict()) for m in history.messages],
        total_count=history.total_count,
        has_more=history.has_more,
    )


@router.get("/{agent_id}/output", response_model=OutputResponse)
async def get_output(
    agent_id: str,
    offset: int = Query(0, ge=0),
    runtime: AgentRuntime = Depends(get_agent_runtime),
):
    """Raw stdout lines written by the agent's processes since ``offset``."""
    try:
        runtime.context.require_agent(agent_id)
    except AgentNotFoundError as e:
        raise _not_found(e)
    lines, new_offset = runtime.runner.read_output_since(agent_id, offset)
    return OutputResponse(agent_id=agent_id, lines=lines, offset=new_offset)


# ==========================================================================
# WebSocket Endpoint for Orchestrator Events
# ==========================================================================

def enqueue_dropping_oldest(queue: asyncio.Queue, event: OrchestratorEvent) -> None:
    """Queue an event for a client, discarding its oldest pending event when full."""
    if queue.full():
        queue.get_nowait()
        logger.debug("Event stream client lagging, dropped oldest event", maxsize=queue.maxsize)
    queue.put_nowait(event)


@router.websocket("/ws")
async def stream_events(websocket: WebSocket):
    """
    Stream orchestrator events.

    Message format: {"id", "kind", "agent_id", "payload", "timestamp"}
    """
    await websocket.accept()
    runtime = get_runtime()
    queue: "asyncio.Queue[OrchestratorEvent]" = asyncio.Queue(maxsize=settings.EVENT_STREAM_QUEUE_SIZE)
    unsubscribe = runtime.context.subscribe(lambda event: enqueue_dropping_oldest(queue, event))

    try:
        await websocket.send_json({
            "kind": "snapshot",
            "payload": {"agents": [agent.to_dict() for agent in runtime.context.list_agents()]},
        })
        while True:
            event = await queue.get()
            await websocket.send_json(jsonable_encoder(event.to_dict()))
    except WebSocketDisconnect:
        logger.info("Event stream client disconnected")
    finally:
        unsubscribe()
