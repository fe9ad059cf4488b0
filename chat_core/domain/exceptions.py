"""统一业务异常模型。

所有跨模块抛出的业务级错误都应该继承自 BusinessError，
便于在引擎层统一捕获并转换为状态（而不是让进程崩溃）。

空输入、无效重试目标等情况不属于异常：对应的状态迁移直接忽略。
"""


class BusinessError(Exception):
    """业务异常基类。

    Attributes:
        code: 机器可读错误码（如 "STREAM_READ_ERROR"）。
        message: 用户可读错误信息。
        http_status: 映射到 HTTP 时可用的状态码，默认 400。
        extra: 其他补充字段（例如 session_id、endpoint 等）。
    """

    def __init__(self, code: str, message: str, http_status: int = 400, **extra):
        self.code = code
        self.message = message
        self.http_status = http_status
        self.extra = extra
        super().__init__(message)


class TransportError(BusinessError):
    """请求未能产生可读的字节流。"""


class NetworkError(TransportError):
    """网络层错误，例如连接失败、连接超时等。"""


class ApiError(TransportError):
    """生成接口返回非 2xx 状态码时抛出。"""


class EmptyBodyError(TransportError):
    """状态码正常但响应没有正文。"""


class StreamReadError(BusinessError):
    """读取或解码字节流的过程中失败，处理方式与 TransportError 相同。"""


class StoreError(BusinessError):
    """键值存储写入失败。"""
