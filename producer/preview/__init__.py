"""Single live preview: endpoint resolution, media context and negotiation."""

from producer.preview.endpoints import PlaybackEndpoint, resolve_playback_endpoint
from producer.preview.negotiator import PreviewNegotiator, PreviewSession, PreviewState

__all__ = [
    "PlaybackEndpoint",
    "PreviewNegotiator",
    "PreviewSession",
    "PreviewState",
    "resolve_playback_endpoint",
]
