"""统一 API 响应模型"""

from typing import Any, Optional
from pydantic import BaseModel


class ApiResponse(BaseModel):
    """标准 API 响应封装"""
    success: bool = True
    data: Optional[Any] = None
    message: str = ""
    error: Optional[str] = None

    @classmethod
    def ok(cls, data: Any = None, message: str = "success") -> "ApiResponse":
        return cls(success=True, data=data, message=message)

    @classmethod
    def fail(cls, error: str, message: str = "failed") -> "ApiResponse":
        return cls(success=False, error=error, message=message)

    @classmethod
    def from_result(cls, result: Any, message: str = "success") -> "ApiResponse":
        """将带错误标签的请求结果包装为响应，error 不为空时 success=False"""
        error = getattr(result, "error", None)
        data = result.model_dump(mode="json") if hasattr(result, "model_dump") else result
        if error:
            return cls(success=False, data=data, error=error, message="failed")
        return cls(success=True, data=data, message=message)
