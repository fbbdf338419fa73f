"""
Protocoale - CNAS therapeutic protocol store

Ingestion and versioning pipeline for the therapeutic protocols published
by the Romanian National Health Insurance House (CNAS):
- Listing scrape and PDF download with capped retries
- PyMuPDF text and image extraction
- Title repair (mojibake, boilerplate headers)
- Section segmentation
- Fingerprinted version history in Postgres
- Scraper run tracking
"""

__version__ = "1.0.0"
