"""
ClinicalData: Clinical Trial Data Capture Services
==================================================

Shared infrastructure (database layer, exception hierarchy) and the
double data-entry reconciliation service for case report forms.
"""

__version__ = "1.0.0"
__author__ = "Clinical Data Platform Team"
__license__ = "MIT"

__all__ = ["__version__"]
