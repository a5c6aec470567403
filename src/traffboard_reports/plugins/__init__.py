from .registry import (
    DEFAULT_EXPORT_FORMATS, BasePlugin, PluginHookManager, PluginHooks, PluginRegistry,
    create_plugin_manifest, create_report_plugin, default_data_processor, validate_plugin,
)
from .builtin import (
    COHORT_PLUGIN_ID, CONVERSION_PLUGIN_ID, CohortReportConfig, create_cohort_plugin, create_conversion_plugin,
    register_builtin_plugins,
)

__all__ = [
    "DEFAULT_EXPORT_FORMATS",
    "BasePlugin",
    "PluginHookManager",
    "PluginHooks",
    "PluginRegistry",
    "create_plugin_manifest",
    "create_report_plugin",
    "default_data_processor",
    "validate_plugin",
    "COHORT_PLUGIN_ID",
    "CONVERSION_PLUGIN_ID",
    "CohortReportConfig",
    "create_cohort_plugin",
    "create_conversion_plugin",
    "register_builtin_plugins",
]
