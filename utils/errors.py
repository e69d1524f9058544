"""
Error taxonomy shared by routers and the subscription engine.

Every error is an HTTPException so routers can keep re-raising them
untouched; main.py renders them in the failure envelope.
"""
from fastapi import HTTPException, status


class AppError(HTTPException):
    status_code = status.HTTP_500_INTERNAL_SERVER_ERROR

    def __init__(self, detail: str):
        super().__init__(status_code=type(self).status_code, detail=detail)


class ValidationError(AppError):
    status_code = status.HTTP_400_BAD_REQUEST


class AuthError(AppError):
    status_code = status.HTTP_401_UNAUTHORIZED


class ForbiddenError(AppError):
    status_code = status.HTTP_403_FORBIDDEN


class NotFoundError(AppError):
    status_code = status.HTTP_404_NOT_FOUND


class ConflictError(AppError):
    status_code = status.HTTP_409_CONFLICT


class UpstreamError(AppError):
    status_code = status.HTTP_502_BAD_GATEWAY


class SignatureError(AppError):
    status_code = status.HTTP_401_UNAUTHORIZED
