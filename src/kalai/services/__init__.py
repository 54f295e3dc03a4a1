"""Application services: settings and telemetry."""
