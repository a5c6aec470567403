"""Error taxonomy for the report engine.

Configuration and dependency-graph errors are raised at registration time.
Execution errors wrap the failing pipeline or cohort stage. Data-quality
conditions are never raised; they surface as ``None`` metric values or
validation error lists.
"""
from __future__ import annotations
from typing import List, Optional


class ReportEngineError(Exception):
    pass


# Configuration -------------------------------------------------------------

class ConfigurationError(ReportEngineError):
    pass


class PipelineValidationError(ConfigurationError):
    def __init__(self, errors: List[str]):
        self.errors = list(errors)
        super().__init__(f"Invalid pipeline: {', '.join(self.errors)}")


class PluginValidationError(ConfigurationError):
    def __init__(self, errors: List[str]):
        self.errors = list(errors)
        super().__init__(f"Invalid plugin: {', '.join(self.errors)}")


# Dependency graph ----------------------------------------------------------

class DependencyGraphError(ReportEngineError):
    pass


class PluginDependencyError(DependencyGraphError):
    def __init__(self, plugin_id: str, dependency: str):
        self.plugin_id = plugin_id
        self.dependency = dependency
        super().__init__(f'Plugin "{plugin_id}" depends on "{dependency}" which is not registered')


class PluginDependentsError(DependencyGraphError):
    def __init__(self, plugin_id: str, dependents: List[str]):
        self.plugin_id = plugin_id
        self.dependents = list(dependents)
        super().__init__(
            f'Cannot unregister plugin "{plugin_id}" because it has dependents: {", ".join(self.dependents)}'
        )


# Execution -----------------------------------------------------------------

class ExecutionError(ReportEngineError):
    pass


class PipelineNotFoundError(ExecutionError):
    def __init__(self, pipeline_id: str):
        self.pipeline_id = pipeline_id
        super().__init__(f'Pipeline "{pipeline_id}" not found')


class PipelineExecutionError(ExecutionError):
    def __init__(self, pipeline_id: str, message: str):
        self.pipeline_id = pipeline_id
        super().__init__(f"Pipeline execution failed: {message}")


class PipelineRetryError(ExecutionError):
    def __init__(self, pipeline_id: str, attempts: int, last_error: Optional[BaseException]):
        self.pipeline_id = pipeline_id
        self.attempts = attempts
        self.last_error = last_error
        message = str(last_error) if last_error is not None else "Unknown error"
        super().__init__(f"Pipeline execution failed after {attempts} attempts: {message}")


class ExtractionError(ExecutionError):
    def __init__(self, source_id: str, message: str):
        self.source_id = source_id
        super().__init__(f'Extraction from source "{source_id}" failed: {message}')


class TransformError(ExecutionError):
    def __init__(self, step_id: str, message: str):
        self.step_id = step_id
        super().__init__(f'Transform "{step_id}" failed: {message}')


class CohortProcessingError(ExecutionError):
    pass


class DataProcessorNotFoundError(ExecutionError, LookupError):
    def __init__(self, report_type: str):
        self.report_type = report_type
        super().__init__(f'No data processor registered for report type "{report_type}"')


class UnknownMetricError(ReportEngineError, ValueError):
    def __init__(self, metric):
        self.metric = metric
        super().__init__(f"Unknown cohort metric: {metric}")
