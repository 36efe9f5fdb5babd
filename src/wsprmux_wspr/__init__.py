"""wsprmux_wspr: WSPR spot ingest, deduplication, logging and WSPRNet upload."""
