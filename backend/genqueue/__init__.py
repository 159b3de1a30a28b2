"""genqueue - pipeline task scheduler for staged content generation.

Turns a project's requested generation stages (prompts, images, audio,
subtitles) into an ordered set of queue tasks and dispatches them against
stage executors under global and per-stage concurrency ceilings.
"""

import logging

__version__ = "0.1.0"

logger = logging.getLogger(__name__)
