"""Bundle loader adapters (BundleSourcePort implementations)."""

from fhirgen.adapters.loaders.json_bundle_loader import JsonBundleLoader, parse_version_info

__all__ = ["JsonBundleLoader", "parse_version_info"]
