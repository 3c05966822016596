from researcher.orchestrators.research_orchestrator import RetrievalOrchestrator

__all__ = ["RetrievalOrchestrator"]
