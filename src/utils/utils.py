from typing import Any, Dict, Optional, TypedDict


class ToolResponse(TypedDict):
    success: bool
    data: Any
    error: Any


def success_response(data: Any) -> ToolResponse:
    return {"success": True, "data": data, "error": None}


def error_response(
    message: str, code: str, context: Optional[Dict[str, Any]] = None
) -> ToolResponse:
    return {
        "success": False,
        "data": None,
        "error": {"message": message, "code": code, "context": context or {}},
    }
