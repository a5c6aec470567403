"""Report data pipeline and cohort analysis engine for the TraffBoard dashboard.

Typical use goes through the composition root::

    engine = create_report_engine()
    report = await engine.generate_report(config, filters)
"""

import logging

from traffboard_reports.engine import ReportEngine, create_report_engine

logging.getLogger(__name__).addHandler(logging.NullHandler())

__all__ = ["ReportEngine", "create_report_engine"]
