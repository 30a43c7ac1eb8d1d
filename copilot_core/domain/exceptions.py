"""统一业务异常模型。

所有跨模块抛出的业务级错误都应该继承自 BusinessError，
便于在 API 层统一映射为“错误信息 + HTTP 状态码”。
"""


class BusinessError(Exception):
    """业务异常基类。

    Attributes:
        code: 机器可读错误码（如 "MISSING_API_KEY"）。
        message: 用户可读错误信息。
        http_status: 映射到 HTTP 时可用的状态码，默认 400。
        extra: 其他补充字段（例如 provider、document_id 等）。
    """

    def __init__(self, code: str, message: str, http_status: int = 400, **extra):
        self.code = code
        self.message = message
        self.http_status = http_status
        self.extra = extra
        super().__init__(message)


class ValidationError(BusinessError):
    """参数、配置或上传文件校验失败。"""


class NotFound(BusinessError):
    """知识库文档、会话等资源不存在。"""

    def __init__(self, code: str, message: str, http_status: int = 404, **extra):
        super().__init__(code, message, http_status, **extra)


class UnsupportedProvider(BusinessError):
    """未知的 Provider 名称，不重试、不回退。"""


class CapabilityError(BusinessError):
    """要求 Provider 执行其不支持的能力（图片输入、流式输出）。"""


class VendorCallFailure(BusinessError):
    """厂商调用失败：网络错误、限流或 4xx/5xx 响应。

    message 中会嵌入厂商返回的状态码与错误信息，不做自动重试。
    """

    def __init__(self, code: str, message: str, http_status: int = 502, **extra):
        super().__init__(code, message, http_status, **extra)


class AgentError(BusinessError):
    """ConversationAgent 对外暴露的唯一错误类型，包装任意阶段的失败。"""

    def __init__(self, code: str, message: str, http_status: int = 500, **extra):
        super().__init__(code, message, http_status, **extra)
