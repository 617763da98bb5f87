"""NanoDC monitor - polls the NanoDC telemetry API and maps nodes onto display slots."""

__version__ = "1.0.0"
