"""Auto-discover all shape modules on import."""
from .registry import ShapeRegistry

ShapeRegistry.discover("openflow.shapes")
