"""
HTTP surface for the ingestion pipeline.
"""
