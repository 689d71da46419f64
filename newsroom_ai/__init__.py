"""
Newsroom AI Derivation Pipeline

Turns raw reporter submissions into short-form items, web articles and
print-ready newspaper articles using an external text-generation provider.

Usage:
    from newsroom_ai.pipeline import get_pipeline

    pipeline = get_pipeline()
    processed = await pipeline.run_once()
"""

__version__ = "1.0.0"
