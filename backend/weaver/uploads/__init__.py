"""Upload sessions: bookkeeping for multi-file uploads.

A session records what an upload accepts and which files have arrived.
It never commits metadata itself; the memory service does that.
"""
