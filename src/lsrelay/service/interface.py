"""Remote capability interface of the extension service.

Operations take opaque payload bytes and report completion through a reply
callback, called once with either a value or an error. Fire-and-forget
operations take no callback. The relay never looks inside the payloads.
"""

from __future__ import annotations

from collections.abc import Callable
from typing import Protocol

DataReply = Callable[[bytes | None, BaseException | None], None]
ErrorReply = Callable[[BaseException | None], None]
StringReply = Callable[[str | None, BaseException | None], None]
# (version, build)
VersionReply = Callable[[tuple[str, str] | None, BaseException | None], None]


class Method:
    """Wire method names."""

    GET_SERVICE_VERSION = "getServiceVersion"
    GET_LANGUAGE_SERVER_VERSION = "getLanguageServerVersion"
    GET_EXTENSION_PERMISSION = "getExtensionPermission"
    GET_SUGGESTED_CODE = "getSuggestedCode"
    GET_NEXT_SUGGESTED_CODE = "getNextSuggestedCode"
    GET_PREVIOUS_SUGGESTED_CODE = "getPreviousSuggestedCode"
    GET_SUGGESTION_ACCEPTED_CODE = "getSuggestionAcceptedCode"
    GET_SUGGESTION_REJECTED_CODE = "getSuggestionRejectedCode"
    GET_REALTIME_SUGGESTED_CODE = "getRealtimeSuggestedCode"
    GET_PROMPT_TO_CODE_ACCEPTED_CODE = "getPromptToCodeAcceptedCode"
    PROMPT_TO_CODE = "promptToCode"
    CUSTOM_COMMAND = "customCommand"
    TOGGLE_REALTIME_SUGGESTION = "toggleRealtimeSuggestion"
    PREFETCH_REALTIME_SUGGESTIONS = "prefetchRealtimeSuggestions"
    OPEN_CHAT = "openChat"
    QUIT = "quit"
    POST_NOTIFICATION = "postNotification"
    SEND = "send"
    GET_INSPECTOR_DATA = "getInspectorData"
    GET_MCP_TOOLS_COLLECTIONS = "getAvailableMCPServerToolsCollections"
    UPDATE_MCP_TOOLS_STATUS = "updateMCPServerToolsStatus"
    SIGN_OUT_ALL = "signOutAllGitHubCopilotService"
    GET_AUTH_STATUS = "getAuthStatus"


# Operations that take editor content and answer with optional updated content.
SUGGESTION_METHODS = frozenset(
    {
        Method.GET_SUGGESTED_CODE,
        Method.GET_NEXT_SUGGESTED_CODE,
        Method.GET_PREVIOUS_SUGGESTED_CODE,
        Method.GET_SUGGESTION_ACCEPTED_CODE,
        Method.GET_SUGGESTION_REJECTED_CODE,
        Method.GET_REALTIME_SUGGESTED_CODE,
        Method.GET_PROMPT_TO_CODE_ACCEPTED_CODE,
        Method.PROMPT_TO_CODE,
    }
)


class ExtensionServiceProtocol(Protocol):
    """Operations the extension service exposes over its connection."""

    def get_service_version(self, reply: VersionReply) -> None: ...

    def get_language_server_version(self, reply: StringReply) -> None: ...

    def get_extension_permission(self, reply: StringReply) -> None: ...

    def suggestion_request(
        self, method: str, editor_content: bytes, reply: DataReply
    ) -> None:
        """Invoke one of SUGGESTION_METHODS."""
        ...

    def custom_command(
        self, command_id: str, editor_content: bytes, reply: DataReply
    ) -> None: ...

    def toggle_realtime_suggestion(self, reply: ErrorReply) -> None: ...

    def prefetch_realtime_suggestions(
        self, editor_content: bytes, reply: ErrorReply
    ) -> None: ...

    def open_chat(self, reply: ErrorReply) -> None: ...

    def quit(self, reply: ErrorReply) -> None: ...

    def post_notification(self, name: str, reply: ErrorReply) -> None: ...

    def send(self, endpoint: str, request_body: bytes, reply: DataReply) -> None: ...

    def get_inspector_data(self, reply: DataReply) -> None: ...

    def get_mcp_tools_collections(self, reply: DataReply) -> None: ...

    def update_mcp_tools_status(self, tools: bytes) -> None: ...

    def sign_out_all(self) -> None: ...

    def get_auth_status(self, reply: DataReply) -> None: ...
