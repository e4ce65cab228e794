from __future__ import annotations

import logging
import re
import string
from dataclasses import dataclass

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from backoffice import models
from backoffice.config import settings
from backoffice.core.errors import ConflictError, DependencyError, NotFoundError, ValidationError

logger = logging.getLogger("backoffice")

_COUNTRY_RE = re.compile(r"^[A-Z]{2}$")

# Placeholders a rule message or recommendation may reference.
TEMPLATE_FIELDS = frozenset(
    {
        "counterparty_name",
        "commodity",
        "commodity_category",
        "deal_value_usd",
        "origin_country",
        "destination_country",
        "incoterm",
        "required_documents",
    }
)

COMMODITY_CATEGORIES: dict[str, str] = {
    **dict.fromkeys(
        ("copper", "aluminium", "aluminum", "nickel", "zinc", "lead", "tin", "iron-ore", "steel"),
        "base-metals",
    ),
    **dict.fromkeys(("gold", "silver", "platinum", "palladium", "precious-metals"), "precious-metals"),
    **dict.fromkeys(
        ("wheat", "corn", "soybeans", "rice", "sugar", "coffee", "cocoa", "cotton"), "agricultural"
    ),
    **dict.fromkeys(("crude-oil", "refined-petroleum", "lng", "coal"), "energy"),
    **dict.fromkeys(("rare-earths", "lithium", "cobalt"), "critical-minerals"),
}

BASE_DOCUMENTS = ("Commercial Invoice", "Packing List", "Bill of Lading")

CATEGORY_DOCUMENTS: dict[str, tuple[str, ...]] = {
    "agricultural": ("Phytosanitary Certificate", "Certificate of Origin"),
    "base-metals": ("Assay Certificate", "Certificate of Origin"),
    "precious-metals": (
        "Assay Certificate",
        "Certificate of Origin",
        "Chain of Custody Documentation",
        "Insurance Certificate",
    ),
    "energy": ("Certificate of Quality", "Certificate of Origin"),
    "critical-minerals": ("Certificate of Analysis", "End-User Certificate"),
}

DESTINATION_DOCUMENTS: dict[str, tuple[str, ...]] = {
    "AE": ("Legalised Certificate of Origin",),
    "CN": ("CIQ Inspection Certificate",),
    "EG": ("ACID Registration Number",),
    "IN": ("Bill of Entry",),
    "NG": ("Form M",),
    "SA": ("SABER Certificate of Conformity",),
}


def is_listed_commodity(commodity: str) -> bool:
    return bool(commodity) and commodity in set(settings.known_commodities)


def commodity_category(commodity: str) -> str:
    return COMMODITY_CATEGORIES.get(commodity, "general")


def required_documents(commodity: str, destination_country: str | None) -> list[str]:
    """Trade documents to collect for a normalized commodity and destination, in a stable order."""

    docs = list(BASE_DOCUMENTS)
    docs += DESTINATION_DOCUMENTS.get(destination_country or "", ())
    docs += CATEGORY_DOCUMENTS.get(commodity_category(commodity), ())
    return list(dict.fromkeys(docs))


@dataclass(frozen=True)
class RuleDefinition:
    rule_code: str
    flag_type: models.FlagType
    scope: models.RuleScope
    severity: models.FlagSeverity
    message: str
    recommendation: str | None = None
    match_value: str | None = None
    min_value_usd: float | None = None
    max_value_usd: float | None = None
    blocks_execution: bool = False
    requires_human_review: bool = True


def _sanctions_rules() -> list[RuleDefinition]:
    rules: list[RuleDefinition] = []
    for cc in ("KP", "IR", "SY", "CU", "RU", "BY"):
        rules.append(
            RuleDefinition(
                rule_code=f"SANCTIONS-DEST-{cc}",
                flag_type=models.FlagType.SANCTIONS,
                scope=models.RuleScope.destination_country,
                match_value=cc,
                severity=models.FlagSeverity.CRITICAL,
                blocks_execution=True,
                message="Destination {destination_country} is under comprehensive sanctions.",
                recommendation="Do not proceed without a documented sanctions clearance or licence.",
            )
        )
        rules.append(
            RuleDefinition(
                rule_code=f"SANCTIONS-ORIG-{cc}",
                flag_type=models.FlagType.SANCTIONS,
                scope=models.RuleScope.origin_country,
                match_value=cc,
                severity=models.FlagSeverity.CRITICAL,
                blocks_execution=True,
                message="Origin {origin_country} is under comprehensive sanctions.",
                recommendation="Verify origin of goods and screen all supply-chain parties.",
            )
        )
    for cc in ("VE", "MM", "SD"):
        rules.append(
            RuleDefinition(
                rule_code=f"SANCTIONS-DEST-HIGH-{cc}",
                flag_type=models.FlagType.SANCTIONS,
                scope=models.RuleScope.destination_country,
                match_value=cc,
                severity=models.FlagSeverity.HIGH,
                message="Destination {destination_country} is a high-risk jurisdiction.",
                recommendation="Run enhanced due diligence on the buyer and end user.",
            )
        )
    for cc in ("CN", "TR", "HK", "AE"):
        rules.append(
            RuleDefinition(
                rule_code=f"JURISDICTION-DEST-MEDIUM-{cc}",
                flag_type=models.FlagType.SANCTIONS,
                scope=models.RuleScope.destination_country,
                match_value=cc,
                severity=models.FlagSeverity.MEDIUM,
                requires_human_review=False,
                message="Destination {destination_country} carries elevated transshipment risk.",
                recommendation="Confirm end-user statement and final destination.",
            )
        )
    return rules


def _commodity_rules() -> list[RuleDefinition]:
    return [
        RuleDefinition(
            rule_code="EXPORT-CONTROL-PRECIOUS-METALS",
            flag_type=models.FlagType.EXPORT_CONTROL,
            scope=models.RuleScope.commodity,
            match_value="precious-metals",
            severity=models.FlagSeverity.HIGH,
            blocks_execution=True,
            message="Commodity {commodity} is export-restricted.",
            recommendation="Obtain export licence and assay certificate before execution.",
        ),
        RuleDefinition(
            rule_code="AML-PRECIOUS-METALS",
            flag_type=models.FlagType.AML,
            scope=models.RuleScope.commodity,
            match_value="precious-metals",
            severity=models.FlagSeverity.MEDIUM,
            message="Precious metals carry elevated money-laundering risk.",
            recommendation="Document chain of custody and source of funds.",
        ),
        RuleDefinition(
            rule_code="EXPORT-CONTROL-CRUDE-OIL",
            flag_type=models.FlagType.EXPORT_CONTROL,
            scope=models.RuleScope.commodity,
            match_value="crude-oil",
            severity=models.FlagSeverity.HIGH,
            blocks_execution=True,
            message="Commodity {commodity} is export-restricted.",
            recommendation="Confirm price-cap attestation and export licence.",
        ),
        RuleDefinition(
            rule_code="EXPORT-CONTROL-RARE-EARTHS",
            flag_type=models.FlagType.EXPORT_CONTROL,
            scope=models.RuleScope.commodity,
            match_value="rare-earths",
            severity=models.FlagSeverity.HIGH,
            blocks_execution=True,
            message="Commodity {commodity} is subject to dual-use export controls.",
            recommendation="Classify the goods and obtain the required export licence.",
        ),
        RuleDefinition(
            rule_code="COMMODITY-UNLISTED",
            flag_type=models.FlagType.COMMODITY,
            scope=models.RuleScope.unlisted_commodity,
            severity=models.FlagSeverity.HIGH,
            blocks_execution=True,
            message="Commodity {commodity} is not in the commodity registry. Screening cannot be completed.",
            recommendation="Verify the commodity exists in the registry and has a classification before re-screening.",
        ),
    ]


def _value_rules() -> list[RuleDefinition]:
    return [
        RuleDefinition(
            rule_code="AML-VALUE-100K",
            flag_type=models.FlagType.AML,
            scope=models.RuleScope.value_threshold,
            min_value_usd=100_000.0,
            severity=models.FlagSeverity.HIGH,
            message="Deal value {deal_value_usd} USD exceeds the transaction reporting threshold.",
            recommendation="Prepare CTR/SAR assessment and verify source of funds.",
        ),
        RuleDefinition(
            rule_code="AML-VALUE-50K",
            flag_type=models.FlagType.AML,
            scope=models.RuleScope.value_threshold,
            min_value_usd=50_000.0,
            max_value_usd=100_000.0,
            severity=models.FlagSeverity.MEDIUM,
            message="Deal value {deal_value_usd} USD requires enhanced AML review.",
            recommendation="Verify source of funds.",
        ),
        RuleDefinition(
            rule_code="VALUE-REVIEW-10K",
            flag_type=models.FlagType.VALUE,
            scope=models.RuleScope.value_threshold,
            min_value_usd=10_000.0,
            max_value_usd=50_000.0,
            severity=models.FlagSeverity.LOW,
            requires_human_review=False,
            message="Deal value {deal_value_usd} USD is above the standard review threshold.",
        ),
    ]


def _incoterm_rules() -> list[RuleDefinition]:
    return [
        RuleDefinition(
            rule_code="INCOTERM-DDP",
            flag_type=models.FlagType.INCOTERM,
            scope=models.RuleScope.incoterm,
            match_value="DDP",
            severity=models.FlagSeverity.MEDIUM,
            message="DDP places import clearance and duties on the seller.",
            recommendation="Confirm the seller can act as importer of record in {destination_country}.",
        ),
        RuleDefinition(
            rule_code="INCOTERM-EXW",
            flag_type=models.FlagType.INCOTERM,
            scope=models.RuleScope.incoterm,
            match_value="EXW",
            severity=models.FlagSeverity.LOW,
            requires_human_review=False,
            message="EXW leaves export clearance with the buyer.",
            recommendation="Obtain proof of export to avoid VAT and export-control exposure.",
        ),
    ] + [
        RuleDefinition(
            rule_code=f"INCOTERM-{term}",
            flag_type=models.FlagType.INCOTERM,
            scope=models.RuleScope.incoterm,
            match_value=term,
            severity=models.FlagSeverity.LOW,
            requires_human_review=False,
            message="{incoterm} selected. Risk transfers at the port of shipment.",
            recommendation=(
                "Confirm: (1) title transfer point, (2) insurance coverage (CIF includes insurance "
                "to destination), (3) freight forwarder arrangements."
            ),
        )
        for term in ("FOB", "CIF")
    ]


def _documentation_rules() -> list[RuleDefinition]:
    return [
        RuleDefinition(
            rule_code="DOCS-TRADE-DOCUMENTS",
            flag_type=models.FlagType.DOCS,
            scope=models.RuleScope.any,
            severity=models.FlagSeverity.MEDIUM,
            requires_human_review=False,
            message="Trade documentation for {commodity} to {destination_country} must be on file.",
            recommendation=(
                "Prepare and retain: {required_documents}. Verify authenticity. "
                "Retain for 5+ years for audit."
            ),
        ),
    ]


def _counterparty_rules() -> list[RuleDefinition]:
    return [
        RuleDefinition(
            rule_code="COUNTERPARTY-OPAQUE-STRUCTURE",
            flag_type=models.FlagType.COUNTERPARTY,
            scope=models.RuleScope.counterparty,
            match_value=r"(?i)\b(offshore|nominee|bearer)\b",
            severity=models.FlagSeverity.HIGH,
            message="Counterparty name {counterparty_name} suggests an opaque ownership structure.",
            recommendation="Identify ultimate beneficial owners before proceeding.",
        ),
    ]


DEFAULT_RULES: tuple[RuleDefinition, ...] = tuple(
    _sanctions_rules()
    + _commodity_rules()
    + _value_rules()
    + _incoterm_rules()
    + _counterparty_rules()
    + _documentation_rules()
)


def validate_template(template: str | None) -> None:
    """Reject a message template that would not render against a screening subject."""

    if not template:
        return
    try:
        names = [name for _, name, _, _ in string.Formatter().parse(template) if name is not None]
    except ValueError as e:
        raise ValidationError(
            "Rule template is malformed",
            code="RULE_TEMPLATE_INVALID",
            details={"template": template, "error": str(e)},
        )

    unknown = sorted({n for n in names if n not in TEMPLATE_FIELDS})
    if unknown:
        raise ValidationError(
            "Rule template references unknown fields",
            code="RULE_TEMPLATE_INVALID",
            details={"unknown_fields": unknown, "allowed_fields": sorted(TEMPLATE_FIELDS)},
        )

    # Every subject field renders as a string, so a format spec like ":,.2f" fails here too.
    try:
        template.format_map({name: "x" for name in TEMPLATE_FIELDS})
    except (KeyError, IndexError, ValueError, AttributeError) as e:
        raise ValidationError(
            "Rule template does not render",
            code="RULE_TEMPLATE_INVALID",
            details={"template": template, "error": str(e)},
        )


def validate_rule_definition(
    *,
    scope: models.RuleScope,
    match_value: str | None,
    min_value_usd: float | None,
    max_value_usd: float | None,
    message: str,
    recommendation: str | None = None,
) -> None:
    if not (message or "").strip():
        raise ValidationError("Rule message is required", code="RULE_MESSAGE_REQUIRED")
    validate_template(message)
    validate_template(recommendation)

    if scope in {models.RuleScope.destination_country, models.RuleScope.origin_country}:
        if not _COUNTRY_RE.match(str(match_value or "")):
            raise ValidationError(
                "Country rules need an ISO-3166 alpha-2 match value",
                code="RULE_INVALID_COUNTRY",
                details={"match_value": match_value},
            )
    elif scope in {models.RuleScope.commodity, models.RuleScope.incoterm}:
        if not (match_value or "").strip():
            raise ValidationError("Rule match value is required", code="RULE_MATCH_REQUIRED")
    elif scope == models.RuleScope.counterparty:
        try:
            re.compile(str(match_value or ""))
        except re.error as e:
            raise ValidationError(
                "Counterparty pattern is not a valid regular expression",
                code="RULE_INVALID_PATTERN",
                details={"error": str(e)},
            )
        if not match_value:
            raise ValidationError("Counterparty pattern is required", code="RULE_MATCH_REQUIRED")
    elif scope == models.RuleScope.value_threshold:
        if min_value_usd is None and max_value_usd is None:
            raise ValidationError(
                "Value threshold rules need a minimum or maximum",
                code="RULE_THRESHOLD_REQUIRED",
            )
        if min_value_usd is not None and max_value_usd is not None and min_value_usd >= max_value_usd:
            raise ValidationError(
                "Minimum must be below maximum",
                code="RULE_THRESHOLD_INVALID",
                details={"min_value_usd": min_value_usd, "max_value_usd": max_value_usd},
            )


def seed_rule_catalog(
    db: Session,
    *,
    rules: tuple[RuleDefinition, ...] = DEFAULT_RULES,
    catalog_version: str | None = None,
    created_by: str = "system",
) -> int:
    """Insert default rules whose code is not in the catalog yet. Returns rows created.

    Existing codes are left alone, including retired ones: once a rule code has history,
    changes go through :func:`create_rule_version`.
    """

    version = catalog_version or settings.rule_catalog_version
    existing = {code for (code,) in db.query(models.ComplianceRule.rule_code).distinct().all()}

    created = 0
    for rule in rules:
        if rule.rule_code in existing:
            continue
        db.add(
            models.ComplianceRule(
                rule_code=rule.rule_code,
                version=1,
                catalog_version=version,
                flag_type=rule.flag_type,
                scope=rule.scope,
                match_value=rule.match_value,
                min_value_usd=rule.min_value_usd,
                max_value_usd=rule.max_value_usd,
                severity=rule.severity,
                blocks_execution=rule.blocks_execution,
                requires_human_review=rule.requires_human_review,
                message=rule.message,
                recommendation=rule.recommendation,
                active=True,
                created_by=created_by,
            )
        )
        created += 1

    if created:
        db.flush()
        logger.info("rule_catalog_seeded", extra={"rules_created": created, "catalog_version": version})
    return created


def load_active_rules(db: Session) -> list[models.ComplianceRule]:
    """Active rules in a stable order. An unreadable catalog is a dependency failure."""

    try:
        return (
            db.query(models.ComplianceRule)
            .filter(models.ComplianceRule.active.is_(True))
            .order_by(models.ComplianceRule.rule_code.asc(), models.ComplianceRule.version.desc())
            .all()
        )
    except SQLAlchemyError as e:
        raise DependencyError(
            "Rule catalog unavailable",
            code="RULE_CATALOG_UNAVAILABLE",
            details={"error": str(e)},
        )


def list_rules(
    db: Session,
    *,
    active_only: bool = True,
    flag_type: models.FlagType | None = None,
    rule_code: str | None = None,
) -> list[models.ComplianceRule]:
    q = db.query(models.ComplianceRule)
    if active_only:
        q = q.filter(models.ComplianceRule.active.is_(True))
    if flag_type is not None:
        q = q.filter(models.ComplianceRule.flag_type == flag_type)
    if rule_code:
        q = q.filter(models.ComplianceRule.rule_code == rule_code)
    return q.order_by(models.ComplianceRule.rule_code.asc(), models.ComplianceRule.version.asc()).all()


def create_rule_version(
    db: Session,
    *,
    rule_code: str,
    flag_type: models.FlagType,
    scope: models.RuleScope,
    severity: models.FlagSeverity,
    message: str,
    recommendation: str | None = None,
    match_value: str | None = None,
    min_value_usd: float | None = None,
    max_value_usd: float | None = None,
    blocks_execution: bool = False,
    requires_human_review: bool = True,
    created_by: str,
) -> models.ComplianceRule:
    """Add a rule, or a new version of an existing code.

    The previous active version is retired and points at its successor. Flags keep
    referencing the version that raised them.
    """

    rule_code = (rule_code or "").strip().upper()
    if not rule_code:
        raise ValidationError("rule_code is required", code="RULE_CODE_REQUIRED")
    if scope in {models.RuleScope.destination_country, models.RuleScope.origin_country}:
        match_value = (match_value or "").strip().upper() or None
    if scope == models.RuleScope.incoterm:
        match_value = (match_value or "").strip().upper() or None

    validate_rule_definition(
        scope=scope,
        match_value=match_value,
        min_value_usd=min_value_usd,
        max_value_usd=max_value_usd,
        message=message,
        recommendation=recommendation,
    )

    latest = (
        db.query(models.ComplianceRule)
        .filter(models.ComplianceRule.rule_code == rule_code)
        .order_by(models.ComplianceRule.version.desc())
        .first()
    )
    next_version = (latest.version + 1) if latest is not None else 1

    rule = models.ComplianceRule(
        rule_code=rule_code,
        version=next_version,
        catalog_version=settings.rule_catalog_version,
        flag_type=flag_type,
        scope=scope,
        match_value=match_value,
        min_value_usd=min_value_usd,
        max_value_usd=max_value_usd,
        severity=severity,
        blocks_execution=bool(blocks_execution),
        requires_human_review=bool(requires_human_review),
        message=message,
        recommendation=recommendation,
        active=True,
        created_by=created_by,
    )
    db.add(rule)
    db.flush()

    (
        db.query(models.ComplianceRule)
        .filter(
            models.ComplianceRule.rule_code == rule_code,
            models.ComplianceRule.id != rule.id,
            models.ComplianceRule.active.is_(True),
        )
        .update({"active": False, "superseded_by_id": rule.id}, synchronize_session=False)
    )

    logger.info(
        "rule_version_created",
        extra={"rule_code": rule_code, "version": next_version, "created_by": created_by},
    )
    return rule


def retire_rule(db: Session, rule_id: int, *, retired_by: str) -> models.ComplianceRule:
    rule = db.get(models.ComplianceRule, rule_id)
    if rule is None:
        raise NotFoundError("Rule not found", code="RULE_NOT_FOUND", details={"rule_id": rule_id})

    updated = (
        db.query(models.ComplianceRule)
        .filter(models.ComplianceRule.id == rule_id, models.ComplianceRule.active.is_(True))
        .update({"active": False}, synchronize_session=False)
    )
    if updated != 1:
        raise ConflictError(
            "Rule is already retired", code="RULE_ALREADY_RETIRED", details={"rule_id": rule_id}
        )

    db.refresh(rule)
    logger.info("rule_retired", extra={"rule_code": rule.rule_code, "retired_by": retired_by})
    return rule
