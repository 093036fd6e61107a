"""Shape registry with auto-discovery."""
import importlib
import pkgutil

from ..engine.errors import InvalidType
from .base import BaseShape, ShapeDefinition


class ShapeRegistry:
    """Singleton registry mapping shape type keys to BaseShape subclasses."""

    _shapes: dict[str, type[BaseShape]] = {}

    @classmethod
    def register(cls, node_type: str | None = None):
        """Decorator to register a shape class.

        Usage:
            @ShapeRegistry.register()
            class Approval(BaseShape):
                ...

            @ShapeRegistry.register("approval")
            class Approval(BaseShape):
                ...
        """
        def decorator(shape_cls: type[BaseShape]) -> type[BaseShape]:
            name = node_type or shape_cls.__name__
            cls._shapes[name] = shape_cls
            return shape_cls
        return decorator

    @classmethod
    def get(cls, node_type: str) -> type[BaseShape]:
        if node_type not in cls._shapes:
            raise InvalidType(node_type)
        return cls._shapes[node_type]

    @classmethod
    def has(cls, node_type: str) -> bool:
        return node_type in cls._shapes

    @classmethod
    def create(cls, node_type: str) -> BaseShape:
        return cls.get(node_type)()

    @classmethod
    def all_definitions(cls) -> dict[str, ShapeDefinition]:
        return {
            name: shape_cls.get_definition(name)
            for name, shape_cls in cls._shapes.items()
        }

    @classmethod
    def categories(cls) -> dict[str, list[str]]:
        """Shape keys grouped by palette category."""
        grouped: dict[str, list[str]] = {}
        for name, shape_cls in cls._shapes.items():
            grouped.setdefault(shape_cls.CATEGORY, []).append(name)
        return grouped

    @classmethod
    def discover(cls, package_name: str) -> None:
        """Import all modules in the given package to trigger @register decorators."""
        try:
            package = importlib.import_module(package_name)
        except ImportError:
            return
        if not hasattr(package, "__path__"):
            return
        for _, module_name, _ in pkgutil.iter_modules(package.__path__):
            if module_name.startswith("_") or module_name in ("base", "registry"):
                continue
            importlib.import_module(f"{package_name}.{module_name}")

    @classmethod
    def clear(cls) -> None:
        cls._shapes.clear()
