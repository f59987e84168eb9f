"""
Meeting Copilot - live meeting transcription with AI insights.
"""

__version__ = "0.1.0"
