"""Workspace researcher.

Decides, before an assistant answers a message, whether workspace memory
(memos and past messages) should be searched, runs the searches inside the
caller's access boundary, and returns formatted context plus citations.
"""

from researcher.orchestrators.research_orchestrator import RetrievalOrchestrator
from researcher.schemas.models import OrchestrationResult, ResearchInput

__all__ = ["OrchestrationResult", "ResearchInput", "RetrievalOrchestrator"]
