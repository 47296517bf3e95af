"""Version lifecycle: DRAFT, ACTIVE, RETIRED."""

from guidance_engine.versions.service import ActiveScript, VersionLifecycleManager

__all__ = ["VersionLifecycleManager", "ActiveScript"]
