"""Interaction state guard for chat-platform command responses.

One guard per inbound interaction makes sure exactly one "first
acknowledgment" is sent, then routes later responses to edit or follow-up.
"""
