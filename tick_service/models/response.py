"""统一 API 响应模型"""

from typing import Any, Optional
from pydantic import BaseModel


class ApiResponse(BaseModel):
    """标准 API 响应封装：success=False 时 error 为机器可读原因，message 面向人"""
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
    def rejected(cls, reason: str, data: Any = None) -> "ApiResponse":
        """请求合法但未被处理（如重复 / 乱序 Tick），附带结果数据"""
        return cls(success=False, data=data, error=reason, message=f"未被接受: {reason}")
