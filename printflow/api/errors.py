# printflow/api/errors.py
from fastapi import HTTPException

from printflow.domain.errors import PipelineError


def http_error(e: PipelineError) -> HTTPException:
    return HTTPException(status_code=e.http_status, detail={"code": e.code, "message": e.message})


def bad_request(e: ValueError) -> HTTPException:
    return HTTPException(status_code=400, detail={"code": "invalid_request", "message": str(e)})
