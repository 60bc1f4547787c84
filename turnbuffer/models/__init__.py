from turnbuffer.models.buffer_session import BufferSession
from turnbuffer.models.buffered_message import BufferedMessage
from turnbuffer.models.dispatch_job import DispatchJob
from turnbuffer.models.feature_flag import FeatureFlag

__all__ = [
    "BufferSession",
    "BufferedMessage",
    "DispatchJob",
    "FeatureFlag",
]
