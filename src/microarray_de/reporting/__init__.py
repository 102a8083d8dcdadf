"""
Report generation module.
"""

from .report_generator import DEReportGenerator, markdown_table

__all__ = ['DEReportGenerator', 'markdown_table']
