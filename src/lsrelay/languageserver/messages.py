"""Method names and the few payload shapes the relay needs to read."""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from lsrelay.status import StatusKind

# =============================================================================
# Client -> server
# =============================================================================

CANCEL_REQUEST = "$/cancelRequest"
GET_VERSION = "getVersion"
CHECK_STATUS = "checkStatus"
SIGN_OUT = "signOut"
GET_COMPLETIONS_CYCLING = "getCompletionsCycling"
CONVERSATION_CREATE = "conversation/create"
CONVERSATION_TURN = "conversation/turn"
WORKSPACE_DID_CHANGE_WATCHED_FILES = "workspace/didChangeWatchedFiles"

# Requests whose payload carries a workDoneToken identifying the workflow.
WORK_DONE_TOKEN_METHODS = frozenset({CONVERSATION_CREATE, CONVERSATION_TURN})

# =============================================================================
# Server -> client notifications
# =============================================================================

WINDOW_LOG_MESSAGE = "window/logMessage"
PROGRESS = "$/progress"
LOG_MESSAGE = "LogMessage"
DID_CHANGE_STATUS = "didChangeStatus"
FEATURE_FLAGS = "featureFlagsNotification"
MCP_TOOLS = "copilot/mcpTools"
CONVERSATION_PRECONDITIONS = "conversation/preconditionsNotification"
STATUS_NOTIFICATION = "statusNotification"

# =============================================================================
# Server -> client requests
# =============================================================================

INVOKE_CLIENT_TOOL = "conversation/invokeClientTool"
INVOKE_CLIENT_TOOL_CONFIRMATION = "conversation/invokeClientToolConfirmation"
CONVERSATION_CONTEXT = "conversation/context"
WATCHED_FILES = "copilot/watchedFiles"
SHOW_MESSAGE_REQUEST = "window/showMessageRequest"


class WorkDoneParams(BaseModel):
    """Request params that identify a conversation workflow."""

    model_config = ConfigDict(extra="allow", populate_by_name=True)

    work_done_token: str = Field(alias="workDoneToken")


class StatusNotificationParams(BaseModel):
    """Payload of the provider status-change notification."""

    kind: StatusKind
    busy: bool
    message: str | None = None

    @classmethod
    def decode(cls, params: Any) -> StatusNotificationParams | None:
        try:
            return cls.model_validate(params)
        except ValidationError:
            return None


class FileChangeType(int, Enum):
    CREATED = 1
    CHANGED = 2
    DELETED = 3


class FileEvent(BaseModel):
    uri: str
    type: FileChangeType


class CopilotDidChangeWatchedFilesParams(BaseModel):
    """``workspace/didChangeWatchedFiles`` with the extra workspace URI."""

    model_config = ConfigDict(populate_by_name=True)

    workspace_uri: str = Field(alias="workspaceUri")
    changes: list[FileEvent]


@dataclass(frozen=True)
class CopilotClientNotification:
    """Provider-specific client notification."""

    method: str
    params: BaseModel

    @classmethod
    def did_change_watched_files(
        cls, params: CopilotDidChangeWatchedFilesParams
    ) -> CopilotClientNotification:
        return cls(method=WORKSPACE_DID_CHANGE_WATCHED_FILES, params=params)

    def params_dict(self) -> dict[str, Any]:
        return self.params.model_dump(mode="json", by_alias=True)
