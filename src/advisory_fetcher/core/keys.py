"""Shared record column keys to avoid magic strings across modules."""

from __future__ import annotations

# Input
K_ADVISORY_URL = "advisory_url"

# Output columns stamped by a batch run
K_DOWNLOAD_LINKS = "download_links"
K_EXTRACTED_SUMMARY = "extracted_summary"
K_URL_STATUS = "url_status"
K_PROCESSED_AT = "processed_at"

OUTPUT_COLUMNS = (K_DOWNLOAD_LINKS, K_EXTRACTED_SUMMARY, K_URL_STATUS, K_PROCESSED_AT)

# Multi-valued cell delimiter used when writing
K_JOIN = "; "
