"""Error taxonomy for chat turns."""

from __future__ import annotations


class ChatError(Exception):
    """Base error carrying a client-facing code and HTTP status."""

    code = "chat_error"
    status_code = 500

    def __init__(self, detail: str) -> None:
        super().__init__(detail)
        self.detail = detail


class InvalidRequest(ChatError):
    code = "missing_params"
    status_code = 400


class UnknownBrand(ChatError):
    code = "unknown_brand"
    status_code = 403


class UpstreamUnavailable(ChatError):
    code = "upstream_unavailable"

    def __init__(self, detail: str, *, status: int | None = None) -> None:
        super().__init__(detail)
        self.status = status


class RunTerminalFailure(ChatError):
    code = "run_failed"

    def __init__(self, run_id: str | None, status: str) -> None:
        super().__init__(f"Run {run_id or '?'} ended with status: {status}")
        self.run_id = run_id
        self.status = status


class RunTimeout(ChatError):
    code = "run_timeout"

    def __init__(self, run_id: str | None, timeout_seconds: float) -> None:
        super().__init__(f"Run {run_id or '?'} polling timeout after {timeout_seconds:.0f}s")
        self.run_id = run_id
        self.timeout_seconds = timeout_seconds


class ToolExecutionError(Exception):
    """A tool call could not be executed; reported back to the run."""

    def __init__(self, tool_name: str | None, detail: str) -> None:
        super().__init__(detail)
        self.tool_name = tool_name
        self.detail = detail


class SinkDeliveryError(Exception):
    """An external handoff sink failed; never fails the turn."""

    def __init__(self, sink: str, detail: str) -> None:
        super().__init__(f"{sink}: {detail}")
        self.sink = sink
        self.detail = detail
