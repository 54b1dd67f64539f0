# =============================================================================
# Threads Module
# =============================================================================
# Conversation structure derived from whatever headers are available:
#
#   - build_threads: RFC reply-chain threads with subject-based orphan merge
#   - group_by_correspondent: one chat per "other party"
#   - group_by_topic: subjects within one chat
#   - text helpers: previews and quote/signature stripping for chat bubbles
#
# Everything here is pure and synchronous; nothing touches the network.
# =============================================================================

from mailmirror.threads.builder import (
    NO_SUBJECT,
    Thread,
    build_threads,
    normalize_subject,
    resolve_root,
)
from mailmirror.threads.correspondents import (
    Correspondent,
    CorrespondentRef,
    LastMessage,
    Topic,
    get_correspondent,
    group_by_correspondent,
    group_by_topic,
    is_from_user,
)
from mailmirror.threads.text import (
    get_clean_message_body,
    get_preview,
    html_to_plain_text,
    strip_quoted_content,
    strip_signature,
)

__all__ = [
    "NO_SUBJECT",
    "Thread",
    "build_threads",
    "normalize_subject",
    "resolve_root",
    "Correspondent",
    "CorrespondentRef",
    "LastMessage",
    "Topic",
    "get_correspondent",
    "group_by_correspondent",
    "group_by_topic",
    "is_from_user",
    "get_clean_message_body",
    "get_preview",
    "html_to_plain_text",
    "strip_quoted_content",
    "strip_signature",
]
