"""Infrastructure for fhirgen: configuration, settings, logging and reports."""
