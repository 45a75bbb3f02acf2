"""Business logic services for ingest, transcode, delivery and migration."""
