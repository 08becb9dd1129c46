from typing import Generic, TypeVar

from pydantic import BaseModel

T = TypeVar("T")


class ApiResponse(BaseModel, Generic[T]):
    success: bool = True
    message: str = ""
    data: T


class ApiList(BaseModel, Generic[T]):
    success: bool = True
    data: list[T]
    count: int
    total: int | None = None


class ErrorDetail(BaseModel):
    kind: str
    message: str


class ErrorResponse(BaseModel):
    success: bool = False
    error: ErrorDetail
