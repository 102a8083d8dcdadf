"""
Pathway enrichment module.
"""

from .kegg import PathwayDatabase, kegga, top_kegg

__all__ = ['PathwayDatabase', 'kegga', 'top_kegg']
