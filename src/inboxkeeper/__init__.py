"""
inboxkeeper

A personal mail client core that fetches messages from a Gmail mailbox,
reconciles them with the locally cached state without losing unsynced
local edits, and prioritizes each message with a language model backed
by a deterministic heuristic classifier.
"""

__version__ = "1.0.0"
__app_name__ = "inboxkeeper"
