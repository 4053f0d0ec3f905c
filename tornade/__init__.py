"""
Tornade - wake-word driven voice session orchestrator

Root package. The voice pipeline lives in ``tornade.assistant``; shared
parsing helpers live in ``tornade.utils``.
"""

__version__ = "0.4.2"
