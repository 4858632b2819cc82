"""Pipelines for referral ingestion, document processing, and matching.

Each step is callable on its own so the webhook handlers, the upload
endpoint and on-demand rematching can share them.
"""
