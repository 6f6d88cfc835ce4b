"""Errors raised by MCP tools and mapped onto JSON-RPC error codes."""

PARSE_ERROR = -32700
INVALID_REQUEST = -32600
METHOD_NOT_FOUND = -32601
INVALID_PARAMS = -32602
SERVER_ERROR = -32000
AUTHENTICATION_REQUIRED = -32001

AUTHENTICATION_REQUIRED_MESSAGE = "Authentication required"


class ToolError(Exception):
    """Domain failure whose message is returned to the client verbatim."""

    code = SERVER_ERROR


class AuthenticationRequired(ToolError):
    code = AUTHENTICATION_REQUIRED

    def __init__(self, message: str = AUTHENTICATION_REQUIRED_MESSAGE):
        super().__init__(message)


class UnknownToolError(ToolError):
    code = INVALID_PARAMS

    def __init__(self, name: str):
        super().__init__(f"Unknown tool: {name}")
        self.name = name


class InvalidToolArguments(ToolError):
    code = INVALID_PARAMS
