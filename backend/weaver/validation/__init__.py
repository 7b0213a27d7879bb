"""Upload validation for Memory Weaver.

Screens candidate files before any byte is persisted:
- extension and MIME allow-lists derived from the upload's categories
- size ceiling per category (empty files are always rejected)
- executable extension denylist and a magic-number/script heuristic

Also normalizes the free-form memory fields (title, tags, privacy, ...).
"""
