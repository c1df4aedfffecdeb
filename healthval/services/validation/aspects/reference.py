"""
Reference aspect: format, target type and integrity of references.

Integrity covers what can be decided from the record itself: fragment
references must name a contained resource, contained resources must not
reference each other in a cycle, and a record should not point at itself.
Existence of internal targets is checked only when a reference resolver is
configured.
"""

import logging
import re
from dataclasses import dataclass
from typing import Any, Optional

from healthval.core.enums import IssueSeverity, ReferenceKind, ValidationAspect
from healthval.schemas.settings import AspectConfig
from healthval.schemas.validation import ValidationIssue
from healthval.services.validation.aspects.base import (
    AspectContext,
    aspect_validator,
    walk,
)
from healthval.utils.errors import CircuitBreakerOpen

logger = logging.getLogger(__name__)

ASPECT = ValidationAspect.REFERENCE

_ID = r"[A-Za-z0-9\-.]{1,64}"
INTERNAL_PATTERN = re.compile(rf"^([A-Z][A-Za-z]+)/({_ID})(/_history/{_ID})?$")
EXTERNAL_PATTERN = re.compile(rf"^https?://\S+?/([A-Z][A-Za-z]+)/({_ID})(/_history/{_ID})?$")
URN_PATTERN = re.compile(
    r"^urn:(uuid:[0-9a-fA-F]{8}-[0-9a-fA-F]{4}-[0-9a-fA-F]{4}-[0-9a-fA-F]{4}-[0-9a-fA-F]{12}"
    r"|oid:[0-2](\.(0|[1-9][0-9]*))+)$"
)

R4_RESOURCE_TYPES = frozenset(
    """
    Account ActivityDefinition AdverseEvent AllergyIntolerance Appointment
    AppointmentResponse AuditEvent Basic Binary BiologicallyDerivedProduct
    BodyStructure Bundle CapabilityStatement CarePlan CareTeam CatalogEntry
    ChargeItem ChargeItemDefinition Claim ClaimResponse ClinicalImpression
    CodeSystem Communication CommunicationRequest CompartmentDefinition
    Composition ConceptMap Condition Consent Contract Coverage
    CoverageEligibilityRequest CoverageEligibilityResponse DetectedIssue Device
    DeviceDefinition DeviceMetric DeviceRequest DeviceUseStatement
    DiagnosticReport DocumentManifest DocumentReference EffectEvidenceSynthesis
    Encounter Endpoint EnrollmentRequest EnrollmentResponse EpisodeOfCare
    EventDefinition Evidence EvidenceVariable ExampleScenario
    ExplanationOfBenefit FamilyMemberHistory Flag Goal GraphDefinition Group
    GuidanceResponse HealthcareService ImagingStudy Immunization
    ImmunizationEvaluation ImmunizationRecommendation ImplementationGuide
    InsurancePlan Invoice Library Linkage List Location Measure MeasureReport
    Media Medication MedicationAdministration MedicationDispense
    MedicationKnowledge MedicationRequest MedicationStatement MedicinalProduct
    MedicinalProductAuthorization MedicinalProductContraindication
    MedicinalProductIndication MedicinalProductIngredient
    MedicinalProductInteraction MedicinalProductManufactured
    MedicinalProductPackaged MedicinalProductPharmaceutical
    MedicinalProductUndesirableEffect MessageDefinition MessageHeader
    MolecularSequence NamingSystem NutritionOrder Observation
    ObservationDefinition OperationDefinition OperationOutcome Organization
    OrganizationAffiliation Parameters Patient PaymentNotice
    PaymentReconciliation Person PlanDefinition Practitioner PractitionerRole
    Procedure Provenance Questionnaire QuestionnaireResponse RelatedPerson
    RequestGroup ResearchDefinition ResearchElementDefinition ResearchStudy
    ResearchSubject RiskAssessment RiskEvidenceSynthesis Schedule
    SearchParameter ServiceRequest Slot Specimen SpecimenDefinition
    StructureDefinition StructureMap Subscription Substance
    SubstanceNucleicAcid SubstancePolymer SubstanceProtein
    SubstanceReferenceInformation SubstanceSourceMaterial
    SubstanceSpecification SupplyDelivery SupplyRequest Task
    TerminologyCapabilities TestReport TestScript ValueSet VerificationResult
    VisionPrescription
    """.split()
)


@dataclass
class ParsedReference:
    raw: Any
    kind: ReferenceKind
    location: list[str]
    target_type: Optional[str] = None
    target_id: Optional[str] = None


def classify_reference(value: Any, location: Optional[list[str]] = None) -> ParsedReference:
    """Work out what kind of reference a string is."""
    location = location or []
    if not isinstance(value, str) or not value.strip():
        return ParsedReference(value, ReferenceKind.INVALID, location)

    if value.startswith("#"):
        return ParsedReference(value, ReferenceKind.FRAGMENT, location, target_id=value[1:])

    if value.startswith("urn:"):
        kind = ReferenceKind.URN if URN_PATTERN.match(value) else ReferenceKind.INVALID
        return ParsedReference(value, kind, location)

    if value.startswith(("http://", "https://")):
        match = EXTERNAL_PATTERN.match(value)
        if match:
            return ParsedReference(
                value, ReferenceKind.EXTERNAL, location, match.group(1), match.group(2)
            )
        return ParsedReference(value, ReferenceKind.EXTERNAL, location)

    match = INTERNAL_PATTERN.match(value)
    if match:
        return ParsedReference(
            value, ReferenceKind.INTERNAL, location, match.group(1), match.group(2)
        )
    return ParsedReference(value, ReferenceKind.INVALID, location)


def extract_references(resource: dict[str, Any]) -> list[ParsedReference]:
    return [
        classify_reference(node["reference"], path + ["reference"])
        for path, node in walk(resource)
        if "reference" in node
    ]


def _contained_index(location: list[str]) -> Optional[int]:
    if len(location) >= 2 and location[0] == "contained" and location[1].isdigit():
        return int(location[1])
    return None


def find_contained_cycles(
    resource: dict[str, Any], references: list[ParsedReference]
) -> list[list[str]]:
    """Cycles of fragment references among contained resources."""
    contained = resource.get("contained")
    if not isinstance(contained, list):
        return []

    index_to_id = {
        i: c.get("id") for i, c in enumerate(contained) if isinstance(c, dict) and c.get("id")
    }
    graph: dict[str, list[str]] = {cid: [] for cid in index_to_id.values()}
    for ref in references:
        if ref.kind != ReferenceKind.FRAGMENT or not ref.target_id:
            continue
        source_index = _contained_index(ref.location)
        source = index_to_id.get(source_index) if source_index is not None else None
        if source is not None and ref.target_id in graph:
            graph[source].append(ref.target_id)

    cycles: list[list[str]] = []
    seen_cycles: set[frozenset[str]] = set()
    visiting: list[str] = []
    done: set[str] = set()

    def visit(node: str) -> None:
        if node in visiting:
            cycle = visiting[visiting.index(node):]
            key = frozenset(cycle)
            if key not in seen_cycles:
                seen_cycles.add(key)
                cycles.append(cycle + [node])
            return
        if node in done:
            return
        visiting.append(node)
        for target in graph[node]:
            visit(target)
        visiting.pop()
        done.add(node)

    for node in graph:
        visit(node)
    return cycles


@aspect_validator(ASPECT)
async def validate_references(
    resource: dict[str, Any], config: AspectConfig, ctx: AspectContext
) -> list[ValidationIssue]:
    severity = config.severity
    issues: list[ValidationIssue] = []
    references = extract_references(resource)

    contained = resource.get("contained")
    contained_ids = {
        c.get("id")
        for c in (contained if isinstance(contained, list) else [])
        if isinstance(c, dict) and c.get("id")
    }
    self_key = (resource.get("resourceType"), resource.get("id"))

    for ref in references:
        if ref.kind == ReferenceKind.INVALID:
            issues.append(
                ValidationIssue(
                    severity=severity,
                    code="INVALID_REFERENCE_FORMAT",
                    message=f"Reference '{ref.raw}' is not a valid reference",
                    aspect=ASPECT,
                    location=ref.location,
                )
            )
            continue

        if ref.target_type and ref.target_type not in R4_RESOURCE_TYPES:
            issues.append(
                ValidationIssue(
                    severity=severity,
                    code="INVALID_REFERENCE_RESOURCE_TYPE",
                    message=f"Reference '{ref.raw}' targets unknown resource type '{ref.target_type}'",
                    aspect=ASPECT,
                    location=ref.location,
                    context={"resource_type": ref.target_type},
                )
            )
            continue

        if (
            ref.kind == ReferenceKind.INTERNAL
            and _contained_index(ref.location) is None
            and (ref.target_type, ref.target_id) == self_key
        ):
            issues.append(
                ValidationIssue(
                    severity=IssueSeverity.WARNING,
                    code="SELF_REFERENCE",
                    message=f"Resource references itself ('{ref.raw}')",
                    aspect=ASPECT,
                    location=ref.location,
                )
            )

        if ref.kind == ReferenceKind.FRAGMENT and ref.target_id and ref.target_id not in contained_ids:
            issues.append(
                ValidationIssue(
                    severity=severity,
                    code="BROKEN_REFERENCE",
                    message=f"Fragment reference '{ref.raw}' has no matching contained resource",
                    aspect=ASPECT,
                    location=ref.location,
                )
            )

    for cycle in find_contained_cycles(resource, references):
        issues.append(
            ValidationIssue(
                severity=severity,
                code="CIRCULAR_REFERENCE",
                message=f"Contained resources reference each other in a cycle: {' -> '.join(cycle)}",
                aspect=ASPECT,
                location=["contained"],
                context={"cycle": cycle},
            )
        )

    if ctx.external.has_references:
        issues.extend(await _check_existence(references, severity, ctx))

    return issues


async def _check_existence(
    references: list[ParsedReference], severity: IssueSeverity, ctx: AspectContext
) -> list[ValidationIssue]:
    issues: list[ValidationIssue] = []
    checked: set[str] = set()
    for ref in references:
        if ref.kind != ReferenceKind.INTERNAL or ref.target_type not in R4_RESOURCE_TYPES:
            continue
        target = f"{ref.target_type}/{ref.target_id}"
        if target in checked:
            continue
        checked.add(target)

        try:
            exists = await ctx.external.reference_exists(target)
        except CircuitBreakerOpen as e:
            issues.append(
                ValidationIssue(
                    severity=IssueSeverity.INFORMATION,
                    code="REFERENCE_RESOLUTION_UNAVAILABLE",
                    message=f"Reference targets not verified: {e}",
                    aspect=ASPECT,
                    location=ref.location,
                )
            )
            break
        except Exception as e:
            logger.warning(f"Reference lookup failed for {target}: {e}")
            issues.append(
                ValidationIssue(
                    severity=IssueSeverity.INFORMATION,
                    code="REFERENCE_RESOLUTION_UNAVAILABLE",
                    message=f"Reference '{target}' could not be verified: {e}",
                    aspect=ASPECT,
                    location=ref.location,
                )
            )
            continue

        if exists is False:
            issues.append(
                ValidationIssue(
                    severity=severity,
                    code="REFERENCE_NOT_FOUND",
                    message=f"Referenced resource '{target}' does not exist",
                    aspect=ASPECT,
                    location=ref.location,
                )
            )
    return issues
