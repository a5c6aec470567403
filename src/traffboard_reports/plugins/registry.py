"""
Report Plugin Registry

Report types are added by registering a ``ReportPlugin``: its data processor
becomes the handler for its ``ReportType`` and its export formats join the
shared format index. Plugins may declare dependencies on other plugin ids;
the registry refuses to register a plugin whose dependencies are missing and
refuses to unregister a plugin that others depend on.
"""

from __future__ import annotations
import logging
import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass, fields
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional

from prometheus_client import Counter, Gauge

from traffboard_reports.exceptions import DataProcessorNotFoundError, PluginDependencyError, PluginDependentsError
from traffboard_reports.pipeline.cache_manager import string_hash32, to_json
from traffboard_reports.types import (
    AppliedFilter, BaseReportConfig, CacheStatus, DataProcessor, ExportFormat, FilterDefinition, FilterType,
    ReportData, ReportMetadata, ReportPlugin, ReportType, ValidationResult,
)

logger = logging.getLogger(__name__)

PLUGIN_EVENTS = Counter('report_plugin_events_total', 'Plugin registry events', ['event'])
PLUGINS_REGISTERED = Gauge('report_plugins_registered', 'Plugins currently registered')
PLUGIN_PROCESSOR_ERRORS = Counter('report_plugin_processor_errors_total', 'Data processor failures', ['report_type'])


# =============================================================================
# EXPORT FORMATS
# =============================================================================

class DEFAULT_EXPORT_FORMATS:
    CSV = ExportFormat(id="csv", name="CSV", extension="csv", mime_type="text/csv", supports=[])
    EXCEL = ExportFormat(
        id="excel", name="Excel", extension="xlsx",
        mime_type="application/vnd.openxmlformats-officedocument.spreadsheetml.sheet",
        supports=["formatting"],
    )
    JSON = ExportFormat(id="json", name="JSON", extension="json", mime_type="application/json",
                        supports=["metadata"])
    PDF = ExportFormat(id="pdf", name="PDF", extension="pdf", mime_type="application/pdf",
                       supports=["images", "charts", "formatting"])
    PNG = ExportFormat(id="png", name="PNG Image", extension="png", mime_type="image/png",
                       supports=["images", "charts"])

    @classmethod
    def all(cls) -> List[ExportFormat]:
        return [cls.CSV, cls.EXCEL, cls.JSON, cls.PDF, cls.PNG]


# =============================================================================
# HOOKS
# =============================================================================

@dataclass
class PluginHooks:
    on_register: Optional[Callable[[ReportPlugin], None]] = None
    on_unregister: Optional[Callable[[ReportPlugin], None]] = None
    on_error: Optional[Callable[[Exception, ReportPlugin], None]] = None


class PluginHookManager:
    def __init__(self, hooks: Optional[PluginHooks] = None):
        self.hooks = hooks or PluginHooks()

    def set_hooks(self, hooks: PluginHooks) -> None:
        self.hooks = hooks

    def trigger_register(self, plugin: ReportPlugin) -> None:
        if self.hooks.on_register:
            self.hooks.on_register(plugin)

    def trigger_unregister(self, plugin: ReportPlugin) -> None:
        if self.hooks.on_unregister:
            self.hooks.on_unregister(plugin)

    def trigger_error(self, error: Exception, plugin: ReportPlugin) -> None:
        if self.hooks.on_error:
            self.hooks.on_error(error, plugin)


# =============================================================================
# REGISTRY
# =============================================================================

class PluginRegistry:
    def __init__(self, hooks: Optional[PluginHookManager] = None):
        self._plugins: Dict[str, ReportPlugin] = {}
        self._data_processors: Dict[ReportType, DataProcessor] = {}
        self._export_formats: Dict[str, ExportFormat] = {}
        self._lock = threading.RLock()
        self.hooks = hooks or PluginHookManager()

    def register(self, plugin: ReportPlugin) -> None:
        with self._lock:
            for dependency in plugin.dependencies or []:
                if dependency not in self._plugins:
                    PLUGIN_EVENTS.labels(event='dependency_error').inc()
                    raise PluginDependencyError(plugin.id, dependency)

            self._plugins[plugin.id] = plugin
            self._data_processors[ReportType(plugin.type)] = plugin.data_processor
            for export_format in plugin.export_formats:
                self._export_formats[export_format.id] = export_format
            PLUGINS_REGISTERED.set(len(self._plugins))

        PLUGIN_EVENTS.labels(event='register').inc()
        logger.info(f"Registered report plugin {plugin.id} v{plugin.version} ({ReportType(plugin.type).value})")
        self.hooks.trigger_register(plugin)

    def unregister(self, plugin_id: str) -> None:
        with self._lock:
            plugin = self._plugins.get(plugin_id)
            if plugin is None:
                return

            dependents = [p.id for p in self._plugins.values() if plugin_id in (p.dependencies or [])]
            if dependents:
                PLUGIN_EVENTS.labels(event='dependents_error').inc()
                raise PluginDependentsError(plugin_id, dependents)

            del self._plugins[plugin_id]
            self._data_processors.pop(ReportType(plugin.type), None)
            for export_format in plugin.export_formats:
                self._export_formats.pop(export_format.id, None)
            PLUGINS_REGISTERED.set(len(self._plugins))

        PLUGIN_EVENTS.labels(event='unregister').inc()
        logger.info(f"Unregistered report plugin {plugin_id}")
        self.hooks.trigger_unregister(plugin)

    def get_plugin(self, plugin_id: str) -> Optional[ReportPlugin]:
        with self._lock:
            return self._plugins.get(plugin_id)

    def has_plugin(self, plugin_id: str) -> bool:
        with self._lock:
            return plugin_id in self._plugins

    def get_plugins_by_type(self, report_type: ReportType) -> List[ReportPlugin]:
        report_type = ReportType(report_type)
        with self._lock:
            return [p for p in self._plugins.values() if ReportType(p.type) is report_type]

    def get_all_plugins(self) -> List[ReportPlugin]:
        with self._lock:
            return list(self._plugins.values())

    def get_data_processor(self, report_type: ReportType) -> Optional[DataProcessor]:
        with self._lock:
            return self._data_processors.get(ReportType(report_type))

    def get_export_format(self, format_id: str) -> Optional[ExportFormat]:
        with self._lock:
            return self._export_formats.get(format_id)

    def get_all_export_formats(self) -> List[ExportFormat]:
        with self._lock:
            return list(self._export_formats.values())

    def get_stats(self) -> Dict[str, Any]:
        with self._lock:
            plugins_by_type: Dict[str, int] = {}
            for plugin in self._plugins.values():
                key = ReportType(plugin.type).value
                plugins_by_type[key] = plugins_by_type.get(key, 0) + 1
            return {
                "total_plugins": len(self._plugins),
                "data_processors": len(self._data_processors),
                "export_formats": len(self._export_formats),
                "plugins_by_type": plugins_by_type,
            }

    async def process_report(self, report_type: ReportType, rows: List[Any], config: BaseReportConfig,
                             filters: Optional[List[AppliedFilter]] = None) -> ReportData:
        """Run the data processor registered for ``report_type``."""
        report_type = ReportType(report_type)
        processor = self.get_data_processor(report_type)
        if processor is None:
            raise DataProcessorNotFoundError(report_type.value)

        try:
            return await processor(rows, config, filters or [])
        except Exception as e:
            PLUGIN_PROCESSOR_ERRORS.labels(report_type=report_type.value).inc()
            logger.error(f"Data processor for {report_type.value} report {config.id} failed: {e}")
            owner = next((p for p in self.get_plugins_by_type(report_type) if p.data_processor == processor), None)
            if owner is not None:
                self.hooks.trigger_error(e, owner)
            raise


# =============================================================================
# FACTORY FUNCTIONS
# =============================================================================

def generate_query_hash(config: BaseReportConfig, filters: List[AppliedFilter]) -> str:
    hash_input = to_json({
        "configId": config.id,
        "type": ReportType(config.type).value,
        "filters": [{"id": f.id, "value": f.value} for f in filters],
    })
    return format(abs(string_hash32(hash_input)), "x")


async def default_data_processor(raw_data: List[Any], config: BaseReportConfig,
                                 filters: List[AppliedFilter]) -> ReportData:
    """Pass rows through unchanged, wrapped in ``ReportData``."""
    return ReportData(
        rows=list(raw_data),
        total_count=len(raw_data),
        metadata=ReportMetadata(
            execution_time=0,
            data_version="1.0.0",
            cache_status=CacheStatus.MISS,
            last_refresh=datetime.now(),
            query_hash=generate_query_hash(config, filters),
            filters=[f.value for f in filters],
        ),
    )


def create_report_plugin(id: str, name: str, version: str, type: ReportType, component: Any,
                         config_schema: Optional[List[FilterDefinition]] = None,
                         data_processor: Optional[DataProcessor] = None,
                         export_formats: Optional[List[ExportFormat]] = None,
                         dependencies: Optional[List[str]] = None,
                         description: Optional[str] = None) -> ReportPlugin:
    return ReportPlugin(
        id=id,
        name=name,
        version=version,
        type=ReportType(type),
        component=component,
        config_schema=list(config_schema or []),
        data_processor=data_processor or default_data_processor,
        export_formats=list(export_formats) if export_formats is not None
        else [DEFAULT_EXPORT_FORMATS.CSV, DEFAULT_EXPORT_FORMATS.JSON],
        dependencies=dependencies,
        description=description,
    )


def validate_plugin(plugin: ReportPlugin) -> ValidationResult:
    errors: List[str] = []

    if not plugin.id:
        errors.append("Plugin ID is required")
    if not plugin.name:
        errors.append("Plugin name is required")
    if not plugin.version:
        errors.append("Plugin version is required")
    if not plugin.type:
        errors.append("Plugin type is required")
    if not plugin.component:
        errors.append("Plugin component is required")
    if not plugin.data_processor:
        errors.append("Plugin data processor is required")
    if not isinstance(plugin.export_formats, list):
        errors.append("Plugin export formats must be an array")
    if not isinstance(plugin.config_schema, list):
        errors.append("Plugin config schema must be an array")

    return ValidationResult(valid=not errors, errors=errors)


def create_plugin_manifest(id: str, name: str, version: str, description: Optional[str] = None) -> Dict[str, Any]:
    return {
        "id": id,
        "name": name,
        "version": version,
        "description": description,
        "registered_at": datetime.now(),
        "author": "TraffBoard",
        "homepage": "https://traffboard.com",
        "repository": "https://github.com/traffboard/plugins",
    }


# =============================================================================
# PLUGIN BASE CLASS
# =============================================================================

class BasePlugin(ABC):
    """Common scaffolding for class-based plugins; ``to_plugin`` yields the registrable record."""

    id: str
    name: str
    version: str
    type: ReportType
    config_schema: List[FilterDefinition] = []
    dependencies: Optional[List[str]] = None
    description: Optional[str] = None
    component: Any = None

    def __init__(self):
        self.export_formats: List[ExportFormat] = [DEFAULT_EXPORT_FORMATS.CSV, DEFAULT_EXPORT_FORMATS.JSON]

    @abstractmethod
    async def data_processor(self, raw_data: List[Any], config: BaseReportConfig,
                             filters: List[AppliedFilter]) -> ReportData:
        ...

    def create_filter(self, id: str, label: str, type: FilterType, **options: Any) -> FilterDefinition:
        allowed = {f.name for f in fields(FilterDefinition)}
        unknown = set(options) - allowed
        if unknown:
            raise TypeError(f"Unknown filter options: {', '.join(sorted(unknown))}")
        values = {"required": False}
        values.update(options)
        return FilterDefinition(id=id, label=label, type=FilterType(type), **values)

    def validate_config(self, config: BaseReportConfig) -> ValidationResult:
        errors: List[str] = []
        if not config.id:
            errors.append("Report ID is required")
        if not config.title:
            errors.append("Report title is required")
        if ReportType(config.type) is not ReportType(self.type):
            errors.append(f'Report type must be "{ReportType(self.type).value}"')
        return ValidationResult(valid=not errors, errors=errors)

    def to_plugin(self) -> ReportPlugin:
        return ReportPlugin(
            id=self.id,
            name=self.name,
            version=self.version,
            type=ReportType(self.type),
            component=self.component,
            config_schema=list(self.config_schema),
            data_processor=self.data_processor,
            export_formats=list(self.export_formats),
            dependencies=self.dependencies,
            description=self.description,
        )
