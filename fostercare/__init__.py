"""Backend package: referral extraction, carer matching, persistence and API.

The extractor and matching engine are pure and synchronous; the pipelines
wrap them with parsing, persistence, status tracking and audit logging.
"""
