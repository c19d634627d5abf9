from .store import InMemoryPipelineStore, StaticTenantRegistry

__all__ = ["InMemoryPipelineStore", "StaticTenantRegistry"]
