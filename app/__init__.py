"""
Flow Dictation - Real-time Medical Dictation Relay

A FastAPI service that relays browser microphone audio to a streaming
speech-recognition backend and turns dictated findings into structured
reports with an LLM.
"""

__version__ = "1.0.0"
