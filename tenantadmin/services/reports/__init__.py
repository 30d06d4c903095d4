from tenantadmin.services.reports.builder import (
    apply_filters,
    build_report_data,
    calculate_summary_stats,
)
from tenantadmin.services.reports.formats import (
    EXPORT_FORMATS,
    RenderedReport,
    ReportMeta,
    content_disposition,
    render_report,
    report_filename,
)

__all__ = [
    "EXPORT_FORMATS",
    "RenderedReport",
    "ReportMeta",
    "apply_filters",
    "build_report_data",
    "calculate_summary_stats",
    "content_disposition",
    "render_report",
    "report_filename",
]
