"""
Collaborator implementations.
"""

from .http_client import HttpxCaller
from .whatsapp import WhatsAppCloudSender
from .contacts import CrmContactMutator
from .redis_backend import RedisRunLock, RedisResumeScheduler
from .memory import (
    RecordingMessageSender,
    RecordingContactMutator,
    InMemoryResumeScheduler,
    InMemoryRunLock,
)

__all__ = [
    "HttpxCaller",
    "WhatsAppCloudSender",
    "CrmContactMutator",
    "RedisRunLock",
    "RedisResumeScheduler",
    "RecordingMessageSender",
    "RecordingContactMutator",
    "InMemoryResumeScheduler",
    "InMemoryRunLock",
]
