"""
Actions fired by note triggers.

Provides the ActionContext and the HTTP and MQTT executors.
"""

from .base import ActionContext
from .http import http_request
from .mqtt import publish, publish_firehose, publish_trigger

__all__ = ["ActionContext", "http_request", "publish", "publish_firehose", "publish_trigger"]
