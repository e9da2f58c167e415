"""OpenSubtitles AI client: session, job orchestration, and language catalogs.

WHY: Submitting media to a remote transcription/translation service
involves a token that expires, jobs that run for hours, and providers
that each spell languages differently. This package keeps all of that
behind one facade so front ends (CLI, HTTP bridge) stay thin.

HOW: Leaf-first layers: core.errors (classifier) and core.languages
(consolidator) are pure; core.session owns the token; core.poller drives
jobs to a terminal state; facade.Orchestrator composes them over
api.client.OpenSubtitlesAIClient.

RULES:
- Only core.session mutates the token
- Only core.poller mutates job state
- Only core.languages compares language subtags
"""

__version__ = "0.1.0"
