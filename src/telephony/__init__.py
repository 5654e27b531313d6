"""Telephony audio: G.711 mu-law, frame layouts and background ambience.

Nothing in this package does I/O; the relay feeds it bytes and sends what it
returns.
"""
