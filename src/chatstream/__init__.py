"""chatstream — real-time chat message delivery over Server-Sent Events.

Committed message inserts are observed through a storage-level change
notification channel and pushed, in order, to every open event stream.
"""

__version__ = "0.1.0"
