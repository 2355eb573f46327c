"""
Service Registry

Discovers service handler plugins and maps service types to them.
"""

import importlib
import inspect
import structlog
from typing import Dict, Type, Any, List
from pathlib import Path

from .errors import ConfigurationError
from .services.base import ServiceHandler


class ServiceRegistry:
    """Registry for service handler plugins and their discovery."""

    def __init__(self, discover: bool = True):
        self.logger = structlog.get_logger(__name__)
        self._handlers: Dict[str, Type[ServiceHandler]] = {}
        self._handler_metadata: Dict[str, Dict[str, Any]] = {}

        if discover:
            self._discover_handlers()

    def _discover_handlers(self) -> None:
        """Import every module in the services package and register its handlers."""
        services_dir = Path(__file__).parent / "services"
        package = f"{__package__}.services"

        for module_file in sorted(services_dir.glob("*.py")):
            if module_file.name in ["__init__.py", "base.py"]:
                continue

            module_name = f"{package}.{module_file.stem}"

            try:
                module = importlib.import_module(module_name)
            except ImportError as e:
                self.logger.error("Failed to import handler module",
                                  module=module_name, error=str(e))
                continue

            for name, obj in inspect.getmembers(module, inspect.isclass):
                if (issubclass(obj, ServiceHandler) and
                        obj is not ServiceHandler and
                        not inspect.isabstract(obj) and
                        obj.__module__ == module_name):
                    self.register_handler(obj.service_type, obj)
                    self.logger.debug("Discovered handler",
                                      service_type=obj.service_type,
                                      module=module_name)

    def register_handler(self, service_type: str, handler_class: Type[ServiceHandler]) -> None:
        """Register a handler class with the registry."""
        if not (inspect.isclass(handler_class) and issubclass(handler_class, ServiceHandler)):
            raise ValueError(f"Handler class must inherit from ServiceHandler: {handler_class}")

        self._handlers[service_type] = handler_class
        self._handler_metadata[service_type] = {
            'description': handler_class.description,
            'default_port': handler_class.default_port,
            'secret_kind': handler_class.secret_kind,
            'mints_tokens': handler_class.mints_tokens,
            'class': handler_class
        }

    def get_handler(self, service_type: str) -> Type[ServiceHandler]:
        """Get a handler class by service type."""
        if service_type not in self._handlers:
            raise ConfigurationError(
                f"Unknown service type: {service_type}",
                available=", ".join(sorted(self._handlers))
            )

        return self._handlers[service_type]

    def list_handlers(self) -> Dict[str, Dict[str, Any]]:
        """List all registered handlers with their metadata."""
        return {
            service_type: {k: v for k, v in metadata.items() if k != 'class'}
            for service_type, metadata in sorted(self._handler_metadata.items())
        }

    def get_available_service_types(self) -> List[str]:
        return sorted(self._handlers)
