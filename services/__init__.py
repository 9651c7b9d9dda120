"""Pipeline services: parsing, classification, geocoding, ingestion."""
