from src.schemas.envelope import ErrorInfo, ErrorLocation, ErrorResponse

__all__ = [
    "ErrorInfo",
    "ErrorLocation",
    "ErrorResponse",
]
