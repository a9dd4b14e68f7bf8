"""Mode prompts with compliance guardrails.

Callers choose a mode and supply a few free-text fields; the instruction text
sent to the image provider is always assembled here. For each mode the
free-text fields are stripped of disallowed terms, the mode's mandatory
constraints are appended after the caller's, and an audit record describes
every change that was made.
"""

import logging
import re
from dataclasses import dataclass
from datetime import datetime, timezone

from commercepix.schemas import Mode, PromptAudit, PromptInputs

logger = logging.getLogger(__name__)

PROMPT_VERSION = "v1"

# Applied to every mode, ahead of caller and mode constraints.
COMPLIANCE_RULES = (
    "No visible logos or brand names from other companies",
    "No text or words added to the product itself (authentic product branding excepted)",
    "No offensive, inappropriate, or misleading imagery",
    "Professional quality suitable for e-commerce",
    "Clear product visibility from the front or primary angle",
    "Well-lit with proper exposure and color accuracy",
    "No watermarks, borders, or decorative frames",
    "High resolution and sharp focus on the product",
)

_TONES = {
    "professional": "professional, clean, and business-appropriate",
    "luxury": "luxurious, premium, and high-end",
    "playful": "fun, energetic, and approachable",
    "minimal": "minimalist, simple, and elegant",
    "bold": "bold, striking, and attention-grabbing",
}
_DEFAULT_TONE = "professional and appealing"

_CATEGORIES = {
    "electronics": "modern tech product",
    "clothing": "fashion item",
    "food": "food product",
    "beauty": "beauty or cosmetic product",
    "home": "home goods item",
    "toys": "toy or children's product",
    "sports": "sports or fitness equipment",
    "books": "book or publication",
}
_DEFAULT_CATEGORY = "product"
_DEFAULT_PRODUCT = "a product"

_WHITESPACE = re.compile(r"\s+")
_EDGE_PUNCTUATION = " ,;:-"


@dataclass(frozen=True)
class ModeRules:
    mode: Mode
    disallowed_terms: tuple[str, ...]
    mandatory_constraints: tuple[str, ...]
    template: str
    # main_white strips terms out of caller constraints; other modes drop the
    # whole constraint.
    drop_matching_constraints: bool
    description_override: str
    constraint_override: str
    mandatory_override: str

    @property
    def template_name(self) -> str:
        return f"{self.mode.value}_{PROMPT_VERSION}"

    @property
    def pattern(self) -> re.Pattern:
        return _term_pattern(self.disallowed_terms)


@dataclass(frozen=True)
class PromptResult:
    instruction_text: str
    audit: PromptAudit


_MAIN_WHITE_TEMPLATE = """Create a professional product photography image of {product} ({category}).

COMPOSITION:
- Pure white background (RGB: 255, 255, 255)
- Product centered in frame
- Front-facing primary angle
- Product fills 80-85% of the frame
- Soft contact shadow under the product for depth

LIGHTING:
- Bright, even studio lighting from multiple angles
- No harsh shadows
- Proper exposure with no blown highlights
- Natural color rendering

STYLE:
- {tone} aesthetic
- Commercial catalog quality
- Sharp focus across the whole product

REQUIREMENTS:
{requirements}

Create a high-quality e-commerce hero image that satisfies marketplace main image guidelines."""

_LIFESTYLE_TEMPLATE = """Create a lifestyle product photography image showing {product} ({category}) in a real-world setting.

SCENE:
- Natural, authentic environment where the product would actually be used
- Product in context but clearly the focal point
- Complementary surroundings that support the product without competing with it
- Optional human element (hands using the product, or a lived-in setting)

COMPOSITION:
- Product prominent and naturally integrated into the scene
- Rule of thirds or a similarly balanced arrangement
- Depth of field that keeps the product in sharp focus

LIGHTING:
- Natural or natural-looking light
- Warm, inviting atmosphere
- Proper exposure across the scene

STYLE:
- {tone} aesthetic
- Authentic and relatable
- Aspirational yet achievable

REQUIREMENTS:
{requirements}

Create a compelling lifestyle image that shows the product in use while meeting e-commerce standards."""

_FEATURE_CALLOUT_TEMPLATE = """Create a feature callout product image for {product} ({category}) that highlights its key features.

COMPOSITION:
- Clean, uncluttered light gray or white background
- Product positioned so the highlighted features are visible
- Close-up insets for details where helpful
- Clear visual hierarchy across the three callouts

VISUAL ELEMENTS:
- Exactly three short factual callouts, each tied to a visible feature
- Thin lines, arrows, or circles connecting each callout to its feature
- Minimal graphic elements that clarify rather than decorate

LIGHTING:
- Bright, detail-revealing light
- Consistent lighting across product and insets
- No shadows that obscure features

STYLE:
- {tone} aesthetic
- Informative, infographic-style presentation

REQUIREMENTS:
{requirements}

Create an informative feature image that explains the product plainly and professionally."""

_PACKAGING_TEMPLATE = """Create a product packaging photography image showing {product} ({category}) in its retail package.

COMPOSITION:
- Product shown with complete retail packaging
- Three-quarter view showing the front panel and one side
- Package fills 75-85% of the frame
- Clean white or light gray background

PACKAGING PRESENTATION:
- Generic, professional, retail-ready packaging
- Modern, shelf-worthy design without competitor branding
- Sealed, new condition

LIGHTING:
- Even studio lighting that shows package details
- Minimal glare on glossy surfaces
- Accurate colors, shadows that add depth without hiding details

STYLE:
- {tone} aesthetic
- Retail photography quality

REQUIREMENTS:
{requirements}

Create a high-quality packaging image suitable for online and in-store retail."""


MODE_RULES: dict[Mode, ModeRules] = {
    Mode.MAIN_WHITE: ModeRules(
        mode=Mode.MAIN_WHITE,
        disallowed_terms=(
            "text overlay", "text", "words", "label", "typography", "caption",
            "props", "accessories", "objects", "items",
            "background scene", "staged background", "environment", "context",
            "dramatic lighting", "colored background", "gradient",
            "shadow play", "artistic lighting", "moody",
        ),
        mandatory_constraints=(
            "MANDATORY: Pure white background (RGB: 255, 255, 255) - NO exceptions",
            "MANDATORY: Absolutely no text, words, or labels anywhere in image",
            "MANDATORY: No props, accessories, or context items - product ONLY",
            "MANDATORY: Product centered in frame, front-facing angle",
            "MANDATORY: Realistic studio lighting - no artistic or dramatic effects",
        ),
        template=_MAIN_WHITE_TEMPLATE,
        drop_matching_constraints=False,
        description_override="Removed disallowed terms from product description for main_white mode",
        constraint_override="Removed terms from constraints incompatible with main_white mode",
        mandatory_override=(
            "Applied main_white mandatory constraints: white background, no text, no props, "
            "centered product, studio lighting"
        ),
    ),
    Mode.LIFESTYLE: ModeRules(
        mode=Mode.LIFESTYLE,
        disallowed_terms=(
            "fake", "mockup", "mock-up", "placeholder", "dummy",
            "package includes", "includes", "comes with", "bonus", "free",
            "set of", "bundle",
        ),
        mandatory_constraints=(
            "MANDATORY: Props are for context only and must be realistic for the scene",
            "MANDATORY: Props do NOT imply they are included with the product",
            "MANDATORY: Product representation must be accurate - no exaggeration",
            "MANDATORY: Scene must be achievable in real life - no fantasy elements",
        ),
        template=_LIFESTYLE_TEMPLATE,
        drop_matching_constraints=True,
        description_override="Removed terms suggesting included items or placeholders from description",
        constraint_override="Removed constraints that could misrepresent included items",
        mandatory_override=(
            "Applied lifestyle mandatory constraints: context-only props, no implied inclusion, "
            "accurate product, realistic scene"
        ),
    ),
    Mode.FEATURE_CALLOUT: ModeRules(
        mode=Mode.FEATURE_CALLOUT,
        disallowed_terms=(
            "certified", "approved", "fda", "medical grade",
            "guaranteed", "proven", "scientifically tested",
            "award-winning", "award winning", "best seller", "bestseller", "#1", "number one",
            "patent", "trademarked", "copyrighted",
        ),
        mandatory_constraints=(
            "ALLOWED: Subtle text overlays for feature descriptions (only mode where text is permitted)",
            "MANDATORY: Exactly three factual feature callouts",
            "MANDATORY: Text must be informative and factual - no promotional language",
            "MANDATORY: No certifications, awards, or unverifiable claims",
            "MANDATORY: Visual callouts (arrows, circles) must be professional and minimal",
        ),
        template=_FEATURE_CALLOUT_TEMPLATE,
        drop_matching_constraints=True,
        description_override="Removed unverifiable claims from description",
        constraint_override="Removed constraints with unverifiable claims",
        mandatory_override=(
            "Applied feature_callout mandatory constraints: text allowed, three factual callouts, "
            "no promotional or unverifiable claims"
        ),
    ),
    Mode.PACKAGING: ModeRules(
        mode=Mode.PACKAGING,
        disallowed_terms=(
            "organic seal", "usda organic", "certified organic", "certified",
            "fda approved", "medical device", "prescription",
            "patent pending", "trademarked", "®", "™",
            "award seal", "seal of approval", "badge", "certification mark",
            "clinically proven", "health claim", "ingredient claim",
        ),
        mandatory_constraints=(
            "MANDATORY: Show product with generic, realistic retail packaging",
            "MANDATORY: No certification seals, badges, or award marks on package",
            "MANDATORY: No certification language on the package",
            "MANDATORY: No specific ingredient claims or health statements",
            "MANDATORY: No trademark symbols (®, ™) or patent claims",
        ),
        template=_PACKAGING_TEMPLATE,
        drop_matching_constraints=True,
        description_override="Removed fake certifications and claims from description",
        constraint_override="Removed constraints with fake certifications or claims",
        mandatory_override=(
            "Applied packaging mandatory constraints: generic packaging, no seals or badges, "
            "no certification or health claims"
        ),
    ),
}


def _term_pattern(terms: tuple[str, ...]) -> re.Pattern:
    # Longest first so "text overlay" wins over "text".
    ordered = sorted(terms, key=len, reverse=True)
    return re.compile("|".join(re.escape(t) for t in ordered), re.IGNORECASE)


def contains_disallowed(text: str, pattern: re.Pattern) -> bool:
    return pattern.search(text) is not None


def strip_terms(text: str, pattern: re.Pattern) -> str:
    """Remove every match of ``pattern`` from ``text``.

    Runs to a fixed point, so the result never contains a match and a second
    call returns it unchanged.
    """
    while True:
        cleaned = _WHITESPACE.sub(" ", pattern.sub(" ", text)).strip(_EDGE_PUNCTUATION)
        if cleaned == text:
            return cleaned
        text = cleaned


def get_tone_description(tone: str | None) -> str:
    if tone and tone.strip().lower() in _TONES:
        return _TONES[tone.strip().lower()]
    return _DEFAULT_TONE


def get_category_context(category: str | None) -> str:
    if category and category.strip().lower() in _CATEGORIES:
        return _CATEGORIES[category.strip().lower()]
    return _DEFAULT_CATEGORY


def _sanitize(rules: ModeRules, inputs: PromptInputs) -> tuple[PromptInputs, list[str], list[str]]:
    pattern = rules.pattern
    overrides: list[str] = []
    warnings: list[str] = []

    description = inputs.product_description
    if description and contains_disallowed(description, pattern):
        cleaned = strip_terms(description, pattern) or None
        overrides.append(rules.description_override)
        warnings.append(
            f"Description contained terms incompatible with {rules.mode.value}: "
            f'"{description}" -> "{cleaned or ""}"'
        )
        description = cleaned

    constraints: list[str] = []
    changed = False
    for constraint in inputs.constraints:
        if not contains_disallowed(constraint, pattern):
            constraints.append(constraint)
            continue
        changed = True
        if rules.drop_matching_constraints:
            warnings.append(f'Constraint removed for {rules.mode.value}: "{constraint}"')
            continue
        cleaned = strip_terms(constraint, pattern)
        if cleaned:
            warnings.append(f'Constraint rewritten for {rules.mode.value}: "{constraint}" -> "{cleaned}"')
            constraints.append(cleaned)
        else:
            warnings.append(f'Constraint removed for {rules.mode.value}: "{constraint}"')
    if changed:
        overrides.append(rules.constraint_override)

    sanitized = inputs.model_copy(update={"product_description": description, "constraints": constraints})
    return sanitized, overrides, warnings


def _requirements_text(constraints: list[str]) -> str:
    return "\n".join(f"- {c}" for c in constraints)


def build_prompt(mode: Mode | str, inputs: PromptInputs | None = None) -> PromptResult:
    """Build the provider instruction text and its audit record for ``mode``.

    The instruction text depends only on ``mode`` and ``inputs``. The audit
    record carries the caller inputs, the sanitized inputs when they differ,
    the full applied constraint list and the override and warning logs.
    """
    try:
        mode = Mode(mode)
    except ValueError:
        raise ValueError(f"Unknown mode: {mode}") from None
    inputs = inputs or PromptInputs()
    rules = MODE_RULES[mode]

    sanitized, overrides, warnings = _sanitize(rules, inputs)
    for warning in warnings:
        logger.warning("prompt sanitized (%s): %s", mode.value, warning)

    constraints = [*COMPLIANCE_RULES, *sanitized.constraints, *rules.mandatory_constraints]
    overrides.append(rules.mandatory_override)

    instruction_text = rules.template.format(
        product=sanitized.product_description or _DEFAULT_PRODUCT,
        category=get_category_context(sanitized.product_category),
        tone=get_tone_description(sanitized.brand_tone),
        requirements=_requirements_text(constraints),
    )

    audit = PromptAudit(
        mode=mode,
        version=PROMPT_VERSION,
        template=rules.template_name,
        generated_at=datetime.now(timezone.utc).isoformat(),
        inputs=inputs,
        sanitized_inputs=sanitized if sanitized != inputs else None,
        constraints=constraints,
        overrides=overrides,
        warnings=warnings,
    )
    return PromptResult(instruction_text=instruction_text, audit=audit)
