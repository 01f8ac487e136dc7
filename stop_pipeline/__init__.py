"""
Delivery stop pipeline.

Reconciles the addresses of a delivery order spreadsheet against a geocoding
provider and a learned-location cache, then groups the rows into unique
stops carrying their package sequence identifiers.
"""

__version__ = "0.1.0"
