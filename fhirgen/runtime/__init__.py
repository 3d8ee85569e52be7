"""Runtime support shipped with every generated package.

``fhir_base.py`` is copied into generated output as ``_base.py``; it must
only depend on the standard library and pydantic.
"""
