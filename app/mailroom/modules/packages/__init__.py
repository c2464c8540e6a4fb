"""
Packages module.

- allocator: per-mailroom pool of recyclable display numbers (1-999)
- lifecycle: the one transition table every status change goes through
- service: registration workflow, transitions, failed package log
"""
