"""Style guide generation: template data, main PDF, derived processing jobs.

Generation is one synchronous render of the Word template into a PDF.
Everything after that is best effort: the PDF is uploaded and the derived
versions (compressed, social images, quick-reference pages) are submitted
independently. A failed submission is logged and left out of the result;
a failed upload yields no processed versions at all. Follow-up actions
add social images, split guides or merged packages (an extra rendered
section combined with the guide) to an uploaded document.
"""

from __future__ import annotations

import asyncio
import base64
import binascii
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

import structlog

from fesoni.config import settings
from fesoni.models.contracts import (
    PortfolioMetadata,
    PortfolioPreferences,
    PortfolioProduct,
    Product,
    StyleAnalysis,
    StylePortfolio,
    StylePortfolioData,
    SubmittedTask,
)
from fesoni.utils.document_service import DocumentServiceClient, DocumentServiceError

log = structlog.get_logger("style_guide")

MAX_TEMPLATE_PRODUCTS = 10
MAX_PORTFOLIO_PRODUCTS = 12
MAX_TITLE_LENGTH = 80
MAX_TIPS = 6
TIPS_PER_KEY = 2
MAX_PALETTE = 8
PALETTE_IN_DOCUMENT = 6

SOCIAL_IMAGE_PAGES = "1-3"
SOCIAL_IMAGE_DPI = 200
QUICK_REFERENCE_PAGES = "1,2"

SPLIT_PAGE_RANGES: dict[str, str] = {
    "tops": "1,2",
    "bottoms": "1,3",
    "accessories": "1,4",
    "outfits": "1,5",
}

MERGE_OPTIONS: dict[str, str] = {
    "trend-report": "Trend Report",
    "care-guide": "Care Instructions",
    "size-fit": "Size & Fit Guide",
    "master-collection": "Master Collection",
}
ADDITIONAL_TEMPLATE_FALLBACK = "additional-content-template.docx"

SEASON_COLOR_TRENDS: dict[str, str] = {
    "Spring": "Soft pastels, sage green, warm coral, butter yellow",
    "Summer": "Ocean blues, coral pink, sandy beige, sunset orange",
    "Fall": "Rich burgundy, forest green, warm browns, golden yellow",
    "Winter": "Deep navy, emerald green, berry tones, classic black",
}

_TREND_NOTES: dict[str, list[str]] = {
    "cottagecore": [
        "Romantic florals and prairie dresses trending",
        "Natural fabrics gaining popularity",
        "Vintage-inspired details in high demand",
    ],
    "minimalist": [
        "Clean lines and neutral tones dominating",
        "Quality basics over trendy pieces",
        "Sustainable fashion focus increasing",
    ],
}

_KEY_PIECES: dict[str, list[str]] = {
    "cottagecore": [
        "Midi prairie skirts",
        "Puff sleeve blouses",
        "Wicker accessories",
        "Mary Jane shoes",
    ],
    "minimalist": [
        "Quality white button-down",
        "Well-fitted trousers",
        "Classic trench coat",
        "Leather loafers",
    ],
}
_DEFAULT_KEY_PIECES = [
    "Versatile blazer",
    "Quality jeans",
    "Classic white tee",
    "Comfortable sneakers",
]

_FIT_TIPS: dict[str, list[str]] = {
    "cottagecore": [
        "Embrace relaxed, flowing fits",
        "High-waisted bottoms are flattering",
        "Layer pieces for depth and interest",
    ],
    "minimalist": [
        "Focus on clean, tailored silhouettes",
        "Ensure proper shoulder fit",
        "Avoid excess fabric or tight fits",
    ],
}
_DEFAULT_FIT_TIPS = [
    "Choose fits that flatter your body type",
    "Ensure comfort and ease of movement",
    "Tailor key pieces for perfect fit",
]

FABRIC_CARE = [
    "Cotton: Machine wash cool, tumble dry low",
    "Linen: Hand wash or gentle cycle, air dry",
    "Wool: Dry clean or hand wash cool",
    "Silk: Hand wash or dry clean only",
    "Denim: Wash inside out, cold water",
]
STAIN_REMOVAL = [
    "Oil stains: Dish soap and warm water",
    "Blood: Cold water and hydrogen peroxide",
    "Sweat: White vinegar and baking soda",
    "Makeup: Makeup remover then regular wash",
    "Grass: Rubbing alcohol then wash",
]
STORAGE_TIPS = [
    "Hang delicate items",
    "Fold knitwear to prevent stretching",
    "Use cedar blocks for moths",
    "Store shoes with trees",
    "Keep accessories organized in compartments",
]
SIZING_NOTES = [
    "US sizing varies by brand - always check individual size charts",
    "European sizes run differently than US",
    "Consult brand-specific sizing guides",
    "Consider fabric stretch when choosing size",
]
MEASUREMENT_GUIDE = [
    "Bust: Measure around fullest part",
    "Waist: Measure at natural waistline",
    "Hips: Measure around fullest part",
    "Inseam: Measure from crotch to ankle",
    "Shoulder: Measure from shoulder point to shoulder point",
]

STYLING_TIPS: dict[str, list[str]] = {
    "minimalist": [
        "Focus on clean lines and neutral colors",
        "Invest in quality basics that mix and match",
        "Choose pieces with simple, elegant silhouettes",
        "Less is more - select versatile, timeless items",
    ],
    "cottagecore": [
        "Layer delicate fabrics and textures",
        "Embrace floral patterns and earthy tones",
        "Mix vintage pieces with modern comfort",
        "Choose natural fabrics like cotton and linen",
    ],
    "dark academia": [
        "Layer blazers over comfortable sweaters",
        "Incorporate rich textures like wool and tweed",
        "Focus on earth tones and deep, scholarly colors",
        "Add vintage accessories for authentic appeal",
    ],
    "sleek": [
        "Choose streamlined silhouettes and modern cuts",
        "Stick to a cohesive color palette",
        "Invest in quality materials with smooth finishes",
        "Keep accessories minimal and functional",
    ],
    "cute": [
        "Add playful details and soft textures",
        "Mix feminine touches with practical pieces",
        "Use pastel colors and gentle patterns",
        "Choose comfortable fits that flatter your shape",
    ],
    "casual": [
        "Prioritize comfort without sacrificing style",
        "Mix and match versatile basics",
        "Add personality with fun accessories",
        "Choose breathable, easy-care fabrics",
    ],
    "professional": [
        "Invest in well-tailored, classic pieces",
        "Stick to sophisticated color combinations",
        "Pay attention to fit and quality details",
        "Choose versatile pieces that work for multiple occasions",
    ],
}

GENERIC_TIPS = [
    "Choose pieces that reflect your personal style",
    "Invest in quality over quantity",
    "Mix textures and patterns thoughtfully",
    "Ensure proper fit for the most flattering look",
]

BASE_PALETTE = ["Black", "White", "Gray"]

COLOR_PALETTES: dict[str, list[str]] = {
    "minimalist": ["White", "Light Gray", "Charcoal", "Black", "Beige", "Navy"],
    "cottagecore": ["Cream", "Sage Green", "Dusty Rose", "Warm Brown", "Lavender", "Soft Yellow"],
    "dark academia": ["Deep Brown", "Forest Green", "Burgundy", "Cream", "Navy", "Charcoal"],
    "sleek": ["Black", "White", "Silver", "Deep Navy", "Charcoal", "Cool Gray"],
    "cute": ["Soft Pink", "Lavender", "Mint Green", "Cream", "Peach", "Light Blue"],
    "bohemian": ["Terracotta", "Mustard", "Deep Teal", "Rust", "Sage", "Cream"],
    "modern": ["Black", "White", "Bold Red", "Electric Blue", "Bright Yellow", "Deep Purple"],
}

_CATEGORY_HINTS: list[tuple[str, tuple[str, ...]]] = [
    ("Clothing", ("dress", "top", "shirt")),
    ("Accessories", ("bag", "jewelry", "watch")),
    ("Footwear", ("shoe", "boot", "sandal")),
    ("Home Decor", ("home", "decor", "lamp")),
]


class TemplateLoadError(Exception):
    """No usable style-guide template (file missing and no base64 fallback)."""


def load_style_template(path: str | None = None, fallback_base64: str | None = None) -> str:
    """Return the Word template as base64, from file or the configured fallback."""
    template_path = Path(path if path is not None else settings.style_template_path)
    fallback = fallback_base64 if fallback_base64 is not None else settings.style_template_base64

    try:
        content = template_path.read_bytes()
    except OSError as exc:
        if fallback:
            log.info("style_template_from_settings", missing=str(template_path))
            return fallback
        raise TemplateLoadError(
            f"Template Loading Failed: could not load {template_path.name} ({exc.strerror or exc})"
        ) from exc

    log.debug("style_template_loaded", path=str(template_path), size=len(content))
    return base64.b64encode(content).decode()


def _dedupe(items: list[str]) -> list[str]:
    return list(dict.fromkeys(items))


def generate_styling_tips(aesthetics: list[str], lifestyle: str) -> list[str]:
    tips: list[str] = []
    for aesthetic in aesthetics:
        tips.extend(STYLING_TIPS.get(aesthetic.lower(), [])[:TIPS_PER_KEY])
    tips.extend(STYLING_TIPS.get(lifestyle.lower(), [])[:TIPS_PER_KEY])
    if not tips:
        tips = list(GENERIC_TIPS)
    return _dedupe(tips)[:MAX_TIPS]


def generate_color_palette(aesthetics: list[str]) -> list[str]:
    palette = list(BASE_PALETTE)
    for aesthetic in aesthetics:
        palette.extend(COLOR_PALETTES.get(aesthetic.lower(), []))
    return _dedupe(palette)[:MAX_PALETTE]


def infer_product_category(title: str) -> str:
    lower = title.lower()
    for category, hints in _CATEGORY_HINTS:
        if any(h in lower for h in hints):
            return category
    return "Fashion"


def current_season(now: datetime | None = None) -> str:
    month = (now or datetime.now(timezone.utc)).month
    if 3 <= month <= 5:
        return "Spring"
    if 6 <= month <= 8:
        return "Summer"
    if 9 <= month <= 11:
        return "Fall"
    return "Winter"


def format_long_date(value: datetime) -> str:
    return f"{value:%B} {value.day}, {value.year}"


def _format_product(product: PortfolioProduct) -> str:
    title = product.title
    if len(title) > MAX_TITLE_LENGTH:
        title = title[: MAX_TITLE_LENGTH - 3] + "..."
    price = f"${product.price:.2f}" if product.price else "Price varies"
    category = product.category or "Fashion"
    return f"- {title}\n  Price: {price} | Category: {category}"


def prepare_template_data(data: StylePortfolioData) -> dict[str, str]:
    """Flatten portfolio data into the string fields the template tags expect."""
    prefs = data.preferences
    meta = data.metadata
    aesthetics = " + ".join(prefs.aesthetics)

    product_list = "\n\n".join(
        _format_product(p) for p in data.products[:MAX_TEMPLATE_PRODUCTS]
    )
    tips = "\n\n".join(
        f"- {tip}" for tip in generate_styling_tips(prefs.aesthetics, prefs.lifestyle)
    )
    palette = " • ".join(generate_color_palette(prefs.aesthetics)[:PALETTE_IN_DOCUMENT])

    values = {
        "userName": meta.user_name or "Style Enthusiast",
        "createdDate": format_long_date(meta.created_date),
        "season": meta.season or "Current Season",
        "occasion": meta.occasion or prefs.lifestyle or "General",
        "aesthetics": aesthetics,
        "lifestyle": prefs.lifestyle,
        "budget": prefs.budget or "Flexible",
        "personalStyle": prefs.personal_style or aesthetics,
        "productList": product_list,
        "stylingTipsList": tips,
        "colorPalette": palette,
    }
    log.debug("template_data_prepared", keys=sorted(values), products=len(data.products))
    return values


def load_additional_template(option_id: str, directory: str | None = None) -> str:
    """Base64 template for a merge option, or the shared additional-content template."""
    base = Path(directory if directory is not None else settings.additional_template_dir)
    for candidate in (base / f"{option_id}-template.docx", base / ADDITIONAL_TEMPLATE_FALLBACK):
        try:
            content = candidate.read_bytes()
        except OSError:
            continue
        log.debug("additional_template_loaded", option=option_id, path=str(candidate))
        return base64.b64encode(content).decode()
    raise TemplateLoadError(f"Template Loading Failed: no template for {option_id} in {base}")


def _bullets_per_aesthetic(
    aesthetics: list[str], table: dict[str, list[str]], default: list[str]
) -> str:
    return "\n\n".join(
        "\n".join(f"• {line}" for line in table.get(a.lower(), default)) for a in aesthetics
    )


def _trend_notes(aesthetic: str) -> list[str]:
    return _TREND_NOTES.get(
        aesthetic.lower(),
        [
            f"{aesthetic} aesthetic gaining mainstream appeal",
            "Focus on authentic personal expression",
            "Quality over quantity trend continues",
        ],
    )


def prepare_additional_content_data(
    option_id: str, data: StylePortfolioData, now: datetime | None = None
) -> dict[str, str]:
    """Template fields for the extra section a merge option appends to the guide."""
    now = now or datetime.now(timezone.utc)
    prefs = data.preferences
    season = data.metadata.season or "Current Season"
    values = {
        "userName": data.metadata.user_name or "Style Enthusiast",
        "createdDate": format_long_date(now),
        "aesthetics": " + ".join(prefs.aesthetics),
        "season": season,
    }
    if option_id == "trend-report":
        values |= {
            "trendTitle": f"{season} {now.year} Trends",
            "keyTrends": "\n\n".join(
                "\n".join(f"• {line}" for line in _trend_notes(a)) for a in prefs.aesthetics
            ),
            "colorTrends": SEASON_COLOR_TRENDS.get(
                season, "Classic neutrals with seasonal accent colors"
            ),
            "keyPieces": _bullets_per_aesthetic(prefs.aesthetics, _KEY_PIECES, _DEFAULT_KEY_PIECES),
        }
    elif option_id == "care-guide":
        values |= {
            "fabricCare": "\n".join(FABRIC_CARE),
            "stainRemoval": "\n".join(STAIN_REMOVAL),
            "storageTips": "\n".join(STORAGE_TIPS),
        }
    elif option_id == "size-fit":
        values |= {
            "sizingCharts": "\n".join(SIZING_NOTES),
            "fitTips": "\n\n".join(
                "\n".join(_FIT_TIPS.get(a.lower(), _DEFAULT_FIT_TIPS)) for a in prefs.aesthetics
            ),
            "measurementGuide": "\n".join(MEASUREMENT_GUIDE),
        }
    elif option_id == "master-collection":
        values["allContent"] = (
            "Complete package with trends, care instructions, sizing, and advanced styling"
        )
    return values


def build_portfolio_data(analysis: StyleAnalysis, products: list[Product]) -> StylePortfolioData:
    """Portfolio input for a chat turn that found products."""
    attrs = analysis.attributes
    lifestyle = attrs.lifestyle or "casual"
    return StylePortfolioData(
        preferences=PortfolioPreferences(
            aesthetics=list(attrs.aesthetics) or ["modern"],
            product_types=list(attrs.product_types) or ["fashion"],
            budget=f"${attrs.budget:g}" if attrs.budget else None,
            lifestyle=lifestyle,
            colors=list(attrs.colors),
        ),
        products=[
            PortfolioProduct(
                product_id=p.product_id,
                title=p.title,
                url=p.url,
                image=p.image,
                price=p.price,
                category=p.category or infer_product_category(p.title),
            )
            for p in products[:MAX_PORTFOLIO_PRODUCTS]
        ],
        metadata=PortfolioMetadata(
            user_name="Valued Customer",
            season=current_season(),
            occasion=lifestyle,
        ),
    )


async def _log_template_tags(client: DocumentServiceClient, template_base64: str) -> None:
    try:
        tags = await client.analyze_template(template_base64)
    except DocumentServiceError as exc:
        log.debug("template_analysis_failed", error=str(exc))
        return
    log.debug(
        "template_tags",
        single_tags=tags["single_tags"],
        double_tags=tags["double_tags"],
    )


async def _submit(task_type: str, submission: Any) -> SubmittedTask | None:
    try:
        task_id = await submission
    except (DocumentServiceError, TemplateLoadError, binascii.Error) as exc:
        log.warning("processing_submission_failed", task_type=task_type, error=str(exc))
        return None
    return SubmittedTask(type=task_type, task_id=task_id)


async def _submit_all(jobs: list[tuple[str, Any]]) -> list[SubmittedTask]:
    results = await asyncio.gather(*(_submit(task_type, job) for task_type, job in jobs))
    return [r for r in results if r is not None]


async def create_style_portfolio(
    client: DocumentServiceClient,
    data: StylePortfolioData,
    template_base64: str | None = None,
) -> StylePortfolio:
    """Render the style guide and submit its derived versions.

    Raises TemplateLoadError or DocumentServiceError when the main document
    cannot be produced; everything after generation is best effort.
    """
    template = template_base64 or load_style_template()
    await _log_template_tags(client, template)

    main_document = await client.generate_document(template, prepare_template_data(data), "pdf")
    log.info("style_guide_generated", products=len(data.products))

    try:
        pdf_bytes = base64.b64decode(main_document)
        document_id = await client.upload_document(pdf_bytes, "style-guide.pdf")
    except (DocumentServiceError, binascii.Error) as exc:
        log.warning("style_guide_upload_failed", error=str(exc))
        return StylePortfolio(main_document=main_document)

    processed = await _submit_all(
        [
            ("compressed", client.compress_document(document_id, "MEDIUM")),
            (
                "social-images",
                client.convert_to_images(document_id, SOCIAL_IMAGE_PAGES, SOCIAL_IMAGE_DPI),
            ),
            (
                "quick-reference",
                client.extract_from_document(document_id, "PAGE", QUICK_REFERENCE_PAGES),
            ),
        ]
    )
    log.info("style_guide_jobs_submitted", document_id=document_id, submitted=len(processed))
    return StylePortfolio(
        main_document=main_document,
        document_id=document_id,
        processed_versions=processed,
    )


async def _merge_package(
    client: DocumentServiceClient,
    document_id: str,
    option_id: str,
    data: StylePortfolioData,
) -> str:
    """Render and upload the option's extra section, then combine it with the guide."""
    template = load_additional_template(option_id)
    generated = await client.generate_document(
        template, prepare_additional_content_data(option_id, data), "pdf"
    )
    additional_id = await client.upload_document(
        base64.b64decode(generated), f"additional-{option_id}.pdf"
    )
    task_id = await client.combine_documents(
        [document_id, additional_id],
        {
            "addBookmark": True,
            "continueMergeOnError": True,
            "retainPageNumbers": False,
            "addToc": True,
            "tocTitle": f"{' + '.join(data.preferences.aesthetics)} Complete Guide",
        },
    )
    log.info("merge_package_submitted", package=MERGE_OPTIONS[option_id], task_id=task_id)
    return task_id


async def submit_followup_tasks(
    client: DocumentServiceClient,
    document_id: str,
    action: str,
    split_options: list[str] | None = None,
    *,
    merge_options: list[str] | None = None,
    portfolio: StylePortfolioData | None = None,
) -> list[SubmittedTask]:
    """Submit the jobs for a follow-up document action on an uploaded guide.

    `merge` needs the portfolio data the guide was rendered from.
    """
    if action == "social-images":
        jobs = [
            (
                "social-images",
                client.convert_to_images(document_id, SOCIAL_IMAGE_PAGES, SOCIAL_IMAGE_DPI),
            )
        ]
    elif action == "split":
        jobs = [
            ("split-guide", client.extract_from_document(document_id, "PAGE", SPLIT_PAGE_RANGES[o]))
            for o in _dedupe(list(split_options or []))
            if o in SPLIT_PAGE_RANGES
        ]
    elif action == "merge":
        if portfolio is None:
            raise ValueError("merge requires the style guide's portfolio data")
        jobs = [
            ("merged-guide", _merge_package(client, document_id, o, portfolio))
            for o in _dedupe(list(merge_options or []))
            if o in MERGE_OPTIONS
        ]
    else:
        raise ValueError(f"unknown document action: {action}")

    submitted = await _submit_all(jobs)
    log.info("followup_tasks_submitted", action=action, submitted=len(submitted))
    return submitted
