"""A small FHIR specification used across the test suite.

The bundles mirror the layout of the published R5 definitions: primitive and
complex types in ``profiles-types.json``, resources in
``profiles-resources.json``, a blood-pressure profile in
``profiles-others.json`` and the terminology each binding needs.
"""

import json
from pathlib import Path
from typing import Any, Dict, List, Optional

SD = "http://hl7.org/fhir/StructureDefinition/"
SYSTEM_STRING = "http://hl7.org/fhirpath/System.String"
FHIR_TYPE_EXTENSION = "http://hl7.org/fhir/StructureDefinition/structuredefinition-fhir-type"

LOINC = "http://loinc.org"
BLOOD_PRESSURE_URL = "http://example.org/fhir/StructureDefinition/BloodPressure"
GENDER_VS = "http://hl7.org/fhir/ValueSet/administrative-gender"
GENDER_CS = "http://hl7.org/fhir/administrative-gender"
OBSERVATION_STATUS_VS = "http://hl7.org/fhir/ValueSet/observation-status"
OBSERVATION_STATUS_CS = "http://hl7.org/fhir/observation-status"
LANGUAGES_VS = "http://hl7.org/fhir/ValueSet/all-languages"
V2_SEX_CS = "http://terminology.hl7.org/CodeSystem/v2-0001"
GENDER_MAP_URL = "http://example.org/fhir/ConceptMap/gender-to-v2"

VERSION_INFO_INI = """[FHIR]
FhirVersion=5.0.0
version=5.0.0
buildId=2aecd53
date=20230326020000
"""

PRIMITIVES = (
    "boolean", "integer", "decimal", "string", "code", "id", "uri", "url",
    "canonical", "instant", "dateTime", "date", "time", "markdown", "positiveInt",
    "unsignedInt",
)


# ============================================================================
# Element builders
# ============================================================================

def element(path: str, cardinality: str = "0..1", types: Optional[List[Any]] = None,
            base_path: Optional[str] = None, base_max: Optional[str] = None,
            element_id: Optional[str] = None, **extra: Any) -> Dict[str, Any]:
    """One snapshot ElementDefinition; ``types`` items are codes or type dicts."""
    low, high = cardinality.split("..")
    data: Dict[str, Any] = {
        "id": element_id or path,
        "path": path,
        "short": path.rsplit(".", 1)[-1],
        "min": int(low),
        "max": high,
        "base": {"path": base_path or path, "min": int(low), "max": base_max or high},
    }
    if types:
        data["type"] = [t if isinstance(t, dict) else {"code": t} for t in types]
    data.update(extra)
    return data


def system_string(fhir_type: str) -> Dict[str, Any]:
    """A System.String type carrying the fhir-type extension (Element.id, Extension.url)."""
    return {
        "extension": [{"url": FHIR_TYPE_EXTENSION, "valueUrl": fhir_type}],
        "code": SYSTEM_STRING,
    }


def reference(*targets: str) -> Dict[str, Any]:
    return {"code": "Reference", "targetProfile": [f"{SD}{target}" for target in targets]}


def binding(strength: str, value_set: str) -> Dict[str, Any]:
    return {"strength": strength, "valueSet": value_set}


def constraint(key: str, human: str, expression: str) -> Dict[str, Any]:
    return {"key": key, "severity": "error", "human": human, "expression": expression}


def coding_pattern(code: str, system: str = LOINC) -> Dict[str, Any]:
    return {"coding": [{"system": system, "code": code}]}


def element_members(prefix: str) -> List[Dict[str, Any]]:
    """id and extension, as every Element descendant lists them."""
    return [
        element(f"{prefix}.id", "0..1", [system_string("string")], base_path="Element.id"),
        element(f"{prefix}.extension", "0..*", ["Extension"], base_path="Element.extension"),
    ]


def backbone_members(prefix: str) -> List[Dict[str, Any]]:
    return element_members(prefix) + [
        element(f"{prefix}.modifierExtension", "0..*", ["Extension"],
                base_path="BackboneElement.modifierExtension"),
    ]


def resource_members(prefix: str) -> List[Dict[str, Any]]:
    return [
        element(f"{prefix}.id", "0..1", [system_string("id")], base_path="Resource.id"),
        element(f"{prefix}.implicitRules", "0..1", ["uri"], base_path="Resource.implicitRules"),
        element(f"{prefix}.language", "0..1", ["code"], base_path="Resource.language",
                binding=binding("required", LANGUAGES_VS)),
    ]


def domain_resource_members(prefix: str) -> List[Dict[str, Any]]:
    return resource_members(prefix) + [
        element(f"{prefix}.contained", "0..*", ["Resource"], base_path="DomainResource.contained"),
        element(f"{prefix}.extension", "0..*", ["Extension"], base_path="DomainResource.extension"),
        element(f"{prefix}.modifierExtension", "0..*", ["Extension"],
                base_path="DomainResource.modifierExtension"),
    ]


# ============================================================================
# StructureDefinitions
# ============================================================================

def structure(name: str, kind: str, elements: List[Dict[str, Any]], base: Optional[str] = None,
              abstract: bool = False, type_name: Optional[str] = None, url: Optional[str] = None,
              derivation: str = "specialization", description: Optional[str] = None) -> Dict[str, Any]:
    data: Dict[str, Any] = {
        "resourceType": "StructureDefinition",
        "id": name,
        "url": url or f"{SD}{name}",
        "version": "5.0.0",
        "name": name,
        "status": "active",
        "description": description or f"{name} definition",
        "fhirVersion": "5.0.0",
        "kind": kind,
        "abstract": abstract,
        "type": type_name or name,
        "snapshot": {"element": elements},
    }
    if base is not None:
        data["baseDefinition"] = base if base.startswith("http") else f"{SD}{base}"
        data["derivation"] = derivation
    return data


def primitive_type(name: str) -> Dict[str, Any]:
    return structure(name, "primitive-type", [element(name, "0..*")], base="Element")


def complex_type(name: str, members: List[Dict[str, Any]], base: str = "Element",
                 abstract: bool = False) -> Dict[str, Any]:
    elements = [element(name, "0..*")] + element_members(name) + members
    return structure(name, "complex-type", elements, base=base, abstract=abstract)


def primitive_types() -> List[Dict[str, Any]]:
    return [primitive_type(name) for name in PRIMITIVES]


def complex_types() -> List[Dict[str, Any]]:
    base = structure("Base", "complex-type", [element("Base", "0..*")], abstract=True)
    element_type = structure("Element", "complex-type", [element("Element", "0..*")] + element_members("Element"),
                             base="Base")
    backbone = structure(
        "BackboneElement", "complex-type",
        [element("BackboneElement", "0..*")] + backbone_members("BackboneElement"),
        base="Element", abstract=True,
    )
    extension = complex_type("Extension", [
        element("Extension.url", "1..1", [system_string("uri")]),
        element("Extension.value[x]", "0..1",
                ["string", "boolean", "code", "integer", "CodeableConcept", "Quantity", "Reference"]),
    ])
    coding = complex_type("Coding", [
        element("Coding.system", "0..1", ["uri"]),
        element("Coding.version", "0..1", ["string"]),
        element("Coding.code", "0..1", ["code"]),
        element("Coding.display", "0..1", ["string"]),
    ])
    codeable_concept = complex_type("CodeableConcept", [
        element("CodeableConcept.coding", "0..*", ["Coding"]),
        element("CodeableConcept.text", "0..1", ["string"]),
    ])
    quantity = complex_type("Quantity", [
        element("Quantity.value", "0..1", ["decimal"]),
        element("Quantity.unit", "0..1", ["string"]),
        element("Quantity.system", "0..1", ["uri"]),
        element("Quantity.code", "0..1", ["code"]),
    ])
    reference_type = complex_type("Reference", [
        element("Reference.reference", "0..1", ["string"]),
        element("Reference.type", "0..1", ["uri"]),
        element("Reference.display", "0..1", ["string"]),
    ])
    return [base, element_type, backbone, extension, coding, codeable_concept, quantity, reference_type]


def resource_structures() -> List[Dict[str, Any]]:
    resource = structure("Resource", "resource", [element("Resource", "0..*")] + resource_members("Resource"),
                         base="Base", abstract=True)
    domain_resource = structure(
        "DomainResource", "resource",
        [element("DomainResource", "0..*", constraint=[
            constraint("dom-2", "If the resource is contained in another resource, it SHALL NOT contain "
                                "nested Resources", "contained.contained.empty()"),
        ])] + domain_resource_members("DomainResource"),
        base="Resource", abstract=True,
    )
    patient = structure("Patient", "resource", [
        element("Patient", "0..*"),
        *domain_resource_members("Patient"),
        element("Patient.active", "0..1", ["boolean"]),
        element("Patient.gender", "0..1", ["code"], binding=binding("required", GENDER_VS)),
        element("Patient.birthDate", "0..1", ["date"]),
        element("Patient.deceased[x]", "0..1", ["boolean", "dateTime"]),
        element("Patient.contact", "0..*", ["BackboneElement"], constraint=[
            constraint("pat-1", "SHALL at least contain a contact's details or a reference to an organization",
                       "name.exists() or telecom.exists() or address.exists() or organization.exists()"),
        ]),
        *backbone_members("Patient.contact"),
        element("Patient.contact.relationship", "0..*", ["CodeableConcept"]),
        element("Patient.contact.gender", "0..1", ["code"], binding=binding("required", GENDER_VS)),
        element("Patient.generalPractitioner", "0..*", [reference("Organization", "Practitioner")]),
    ], base="DomainResource", description="Demographics and other administrative information about an individual.")
    return [resource, domain_resource, patient, observation_structure(), questionnaire_structure()]


def observation_structure() -> Dict[str, Any]:
    return structure("Observation", "resource", [
        element("Observation", "0..*", constraint=[observation_constraint()]),
        *domain_resource_members("Observation"),
        element("Observation.status", "1..1", ["code"], binding=binding("required", OBSERVATION_STATUS_VS)),
        element("Observation.code", "1..1", ["CodeableConcept"]),
        element("Observation.subject", "0..1", [reference("Patient")]),
        element("Observation.value[x]", "0..1", ["Quantity", "CodeableConcept", "string", "boolean", "integer"]),
        element("Observation.component", "0..*", ["BackboneElement"]),
        *backbone_members("Observation.component"),
        element("Observation.component.code", "1..1", ["CodeableConcept"]),
        element("Observation.component.value[x]", "0..1", ["Quantity", "string"]),
    ], base="DomainResource", description="Measurements and simple assertions made about a patient.")


def observation_constraint() -> Dict[str, Any]:
    return constraint(
        "obs-7",
        "If Observation.code is the same as an Observation.component.code then the value element "
        "associated with the code SHALL NOT be present",
        "value.empty() or component.code.where(coding.intersect(%resource.code.coding).exists()).empty()",
    )


def questionnaire_structure() -> Dict[str, Any]:
    return structure("Questionnaire", "resource", [
        element("Questionnaire", "0..*"),
        *domain_resource_members("Questionnaire"),
        element("Questionnaire.status", "1..1", ["code"]),
        element("Questionnaire.item", "0..*", ["BackboneElement"]),
        *backbone_members("Questionnaire.item"),
        element("Questionnaire.item.linkId", "1..1", ["string"]),
        element("Questionnaire.item.text", "0..1", ["string"]),
        element("Questionnaire.item.item", "0..*", contentReference="#Questionnaire.item"),
    ], base="DomainResource", description="A structured set of questions.")


def component_slice(name: str, code: str) -> List[Dict[str, Any]]:
    slice_id = f"Observation.component:{name}"
    return [
        element("Observation.component", "1..1", ["BackboneElement"], base_max="*",
                element_id=slice_id, sliceName=name),
        element("Observation.component.code", "1..1", ["CodeableConcept"], element_id=f"{slice_id}.code",
                patternCodeableConcept=coding_pattern(code)),
        element("Observation.component.value[x]", "0..1", ["Quantity"], element_id=f"{slice_id}.value[x]"),
    ]


def blood_pressure_profile() -> Dict[str, Any]:
    return structure("BloodPressure", "resource", [
        element("Observation", "0..*", constraint=[observation_constraint()]),
        *domain_resource_members("Observation"),
        element("Observation.status", "1..1", ["code"], binding=binding("required", OBSERVATION_STATUS_VS)),
        element("Observation.code", "1..1", ["CodeableConcept"], patternCodeableConcept=coding_pattern("85354-9")),
        element("Observation.subject", "0..1", [reference("Patient")]),
        element("Observation.subject.type", "0..1", ["uri"], fixedUri="Patient"),
        element("Observation.value[x]", "0..0", ["Quantity", "CodeableConcept", "string", "boolean", "integer"],
                base_max="1"),
        element("Observation.component", "2..*", ["BackboneElement"], base_max="*", slicing={
            "discriminator": [{"type": "pattern", "path": "code"}],
            "ordered": False,
            "rules": "closed",
        }),
        *backbone_members("Observation.component"),
        element("Observation.component.code", "1..1", ["CodeableConcept"]),
        element("Observation.component.value[x]", "0..1", ["Quantity", "string"]),
        *component_slice("systolic", "8480-6"),
        *component_slice("diastolic", "8462-4"),
    ], base="Observation", type_name="Observation", url=BLOOD_PRESSURE_URL, derivation="constraint",
        description="Blood pressure panel with systolic and diastolic components.")


# ============================================================================
# Terminology and search parameters
# ============================================================================

def code_system(url: str, resource_id: str, name: str, concepts: List[Dict[str, Any]],
                content: str = "complete") -> Dict[str, Any]:
    return {
        "resourceType": "CodeSystem",
        "id": resource_id,
        "url": url,
        "version": "5.0.0",
        "name": name,
        "status": "active",
        "content": content,
        "concept": concepts,
    }


def value_set(url: str, resource_id: str, name: str, include: List[Dict[str, Any]],
              exclude: Optional[List[Dict[str, Any]]] = None) -> Dict[str, Any]:
    compose: Dict[str, Any] = {"include": include}
    if exclude:
        compose["exclude"] = exclude
    return {
        "resourceType": "ValueSet",
        "id": resource_id,
        "url": url,
        "version": "5.0.0",
        "name": name,
        "status": "active",
        "compose": compose,
    }


def concept(code: str, display: str, definition: Optional[str] = None, deprecated: bool = False) -> Dict[str, Any]:
    data: Dict[str, Any] = {"code": code, "display": display, "definition": definition or display}
    if deprecated:
        data["property"] = [{"code": "status", "valueCode": "deprecated"}]
    return data


def terminology() -> List[Dict[str, Any]]:
    return [
        code_system(GENDER_CS, "administrative-gender", "AdministrativeGender", [
            concept("male", "Male"),
            concept("female", "Female"),
            concept("other", "Other"),
            concept("unknown", "Unknown"),
        ]),
        value_set(GENDER_VS, "administrative-gender", "AdministrativeGender", [{"system": GENDER_CS}]),
        code_system(OBSERVATION_STATUS_CS, "observation-status", "ObservationStatus", [
            concept("registered", "Registered"),
            concept("preliminary", "Preliminary"),
            concept("final", "Final"),
            concept("amended", "Amended"),
            concept("cancelled", "Cancelled", deprecated=True),
            concept("entered-in-error", "Entered in Error"),
            concept("unknown", "Unknown"),
        ]),
        value_set(OBSERVATION_STATUS_VS, "observation-status", "ObservationStatus",
                  [{"system": OBSERVATION_STATUS_CS}]),
        value_set(LANGUAGES_VS, "all-languages", "AllLanguages", [{"system": "urn:ietf:bcp:47"}]),
    ]


def gender_concept_map() -> Dict[str, Any]:
    return {
        "resourceType": "ConceptMap",
        "id": "gender-to-v2",
        "url": GENDER_MAP_URL,
        "version": "5.0.0",
        "name": "GenderToV2",
        "status": "active",
        "sourceScopeUri": GENDER_VS,
        "group": [{
            "source": GENDER_CS,
            "target": V2_SEX_CS,
            "element": [
                {"code": "male", "target": [{"code": "M", "display": "Male", "relationship": "equivalent"}]},
                {"code": "female", "target": [{"code": "F", "display": "Female", "relationship": "equivalent"}]},
                {"code": "other", "target": [{"code": "A", "display": "Ambiguous", "relationship": "wider"},
                                             {"code": "O", "display": "Other", "relationship": "wider"}]},
                {"code": "unknown", "target": [{"code": "U", "display": "Unknown", "relationship": "equivalent"}]},
            ],
        }],
    }


def search_parameter(resource_id: str, code: str, base: List[str], param_type: str,
                     expression: str) -> Dict[str, Any]:
    return {
        "resourceType": "SearchParameter",
        "id": resource_id,
        "url": f"http://hl7.org/fhir/SearchParameter/{resource_id}",
        "version": "5.0.0",
        "name": code,
        "status": "active",
        "description": f"Search on {expression}",
        "code": code,
        "base": base,
        "type": param_type,
        "expression": expression,
        "processingMode": "normal",
    }


def search_parameters() -> List[Dict[str, Any]]:
    return [
        search_parameter("individual-gender", "gender", ["Patient"], "token", "Patient.gender"),
        search_parameter("individual-birthdate", "birthdate", ["Patient"], "date", "Patient.birthDate"),
        search_parameter("Observation-status", "status", ["Observation"], "token", "Observation.status"),
        search_parameter("clinical-code", "code", ["Observation"], "token", "Observation.code"),
    ]


# ============================================================================
# Bundles on disk
# ============================================================================

def bundle(resources: List[Dict[str, Any]], bundle_id: str = "definitions") -> Dict[str, Any]:
    return {
        "resourceType": "Bundle",
        "id": bundle_id,
        "type": "collection",
        "entry": [{"fullUrl": resource.get("url"), "resource": resource} for resource in resources],
    }


def default_bundles() -> Dict[str, List[Dict[str, Any]]]:
    return {
        "profiles-types.json": primitive_types() + complex_types(),
        "profiles-resources.json": resource_structures(),
        "profiles-others.json": [blood_pressure_profile()],
        "valuesets.json": terminology(),
        "conceptmaps.json": [gender_concept_map()],
        "search-parameters.json": search_parameters(),
    }


def minimal_bundles(extra_types: Optional[List[Dict[str, Any]]] = None) -> Dict[str, List[Dict[str, Any]]]:
    """Primitive and complex data types only: no resources, no terminology."""
    return {
        "profiles-types.json": primitive_types() + complex_types() + list(extra_types or []),
        "profiles-resources.json": [],
        "valuesets.json": [],
    }


def write_specification(directory: Path, bundles: Optional[Dict[str, List[Dict[str, Any]]]] = None,
                        version_info: Optional[str] = VERSION_INFO_INI) -> Path:
    """Write bundles (default: the full test specification) and version.info into a directory."""
    directory = Path(directory)
    directory.mkdir(parents=True, exist_ok=True)
    for filename, resources in (default_bundles() if bundles is None else bundles).items():
        (directory / filename).write_text(json.dumps(bundle(resources), indent=2), encoding="utf-8")
    if version_info is not None:
        (directory / "version.info").write_text(version_info, encoding="utf-8")
    return directory
