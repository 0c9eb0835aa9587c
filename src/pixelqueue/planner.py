"""Variant planner: project settings + image metadata → variant tasks.

Everything here is pure and deterministic. Storage keys are built from the
project namespace, a fixed subpath per kind and the per-upload identifier:

    {namespace}/images/original/{upload_id}.{ext}
    {namespace}/images/{variant}/{upload_id}.{ext}

The user-supplied filename never appears in a key.
"""

import re
import uuid
from typing import Any, Dict, List, Mapping, Tuple, Union

from .errors import PlanningError
from .models import (
    Fit,
    ImageMetadata,
    OutputFormat,
    ProjectSettings,
    VariantDefinition,
    VariantTask,
)

_SAFE_SEGMENT_RE = re.compile(r"^[A-Za-z0-9][A-Za-z0-9_-]*$")

# Pillow format name → OutputFormat for sources we can re-encode as-is
SOURCE_FORMATS = {
    "JPEG": OutputFormat.JPEG,
    "MPO": OutputFormat.JPEG,  # Multi-picture JPEG from phone cameras
    "PNG": OutputFormat.PNG,
    "WEBP": OutputFormat.WEBP,
    "AVIF": OutputFormat.AVIF,
}

EXTENSIONS = {
    OutputFormat.JPEG: "jpg",
    OutputFormat.PNG: "png",
    OutputFormat.WEBP: "webp",
    OutputFormat.AVIF: "avif",
}

CONTENT_TYPES = {
    OutputFormat.JPEG: "image/jpeg",
    OutputFormat.PNG: "image/png",
    OutputFormat.WEBP: "image/webp",
    OutputFormat.AVIF: "image/avif",
}

VariantDefs = Union[ProjectSettings, Mapping[str, Any], None]


def new_upload_id() -> str:
    """Fresh identifier shared by the original and every variant of one upload."""
    return uuid.uuid4().hex


def project_namespace(project_name: str, project_id: str) -> str:
    """Stable storage namespace for a project: ``{slug}-{project_id}``."""
    slug = re.sub(r"[^a-z0-9]+", "-", project_name.lower()).strip("-") or "project"
    namespace = f"{slug}-{project_id}"
    if not _SAFE_SEGMENT_RE.match(namespace):
        raise PlanningError(f"project id '{project_id}' cannot be used in a storage key")
    return namespace


def original_key(namespace: str, upload_id: str, source_format: str) -> str:
    """Key of the original blob for an upload."""
    _check_segment(namespace, "namespace")
    _check_segment(upload_id, "upload id")
    fmt = SOURCE_FORMATS.get(source_format.upper())
    ext = EXTENSIONS[fmt] if fmt else "bin"
    return f"{namespace}/images/original/{upload_id}.{ext}"


def variant_key(namespace: str, variant: str, upload_id: str, fmt: OutputFormat) -> str:
    return f"{namespace}/images/{variant}/{upload_id}.{EXTENSIONS[OutputFormat(fmt)]}"


def resolve_format(definition: VariantDefinition, metadata: ImageMetadata) -> OutputFormat:
    """Concrete output format; ORIGINAL resolves to the source format."""
    fmt = OutputFormat(definition.format)
    if fmt != OutputFormat.ORIGINAL:
        return fmt
    source = SOURCE_FORMATS.get(metadata.format.upper())
    if source is None:
        raise PlanningError(
            f"source format {metadata.format} cannot be kept as-is; set an explicit format"
        )
    return source


def resolve_dimensions(definition: VariantDefinition, metadata: ImageMetadata) -> Tuple[int, int]:
    """Output size for a definition applied to a source of the given size.

    - width only / height only: the other side follows the source aspect ratio
    - both, contain: largest size that fits the box, aspect preserved
    - both, cover / stretch: exactly the box
    - max_width / max_height: shrink to fit, never enlarge
    - nothing: source size
    """
    src_w, src_h = metadata.width, metadata.height
    w, h = definition.width, definition.height
    fit = Fit(definition.fit)

    if w is not None and h is not None:
        if fit in (Fit.COVER, Fit.STRETCH):
            return w, h
        return _contain(src_w, src_h, w, h)

    if w is not None:
        return w, max(1, round(w * src_h / src_w))

    if h is not None:
        return max(1, round(h * src_w / src_h)), h

    if definition.max_width is not None or definition.max_height is not None:
        scale_w = definition.max_width / src_w if definition.max_width else 1.0
        scale_h = definition.max_height / src_h if definition.max_height else 1.0
        if min(scale_w, scale_h) >= 1.0:
            return src_w, src_h
        if scale_w <= scale_h:
            return definition.max_width, max(1, round(definition.max_width * src_h / src_w))
        return max(1, round(definition.max_height * src_w / src_h)), definition.max_height

    return src_w, src_h


def _contain(src_w: int, src_h: int, box_w: int, box_h: int) -> Tuple[int, int]:
    # Same arithmetic as PIL.ImageOps.contain so planned and produced sizes agree
    src_ratio = src_w / src_h
    box_ratio = box_w / box_h
    if src_ratio > box_ratio:
        return box_w, max(1, round(src_h / src_w * box_w))
    if src_ratio < box_ratio:
        return max(1, round(src_w / src_h * box_h)), box_h
    return box_w, box_h


def plan(
    image_metadata: Union[ImageMetadata, Dict[str, Any]],
    variant_defs: VariantDefs,
    namespace: str,
    upload_id: str,
) -> List[VariantTask]:
    """Map variant settings onto one upload.

    Args:
        image_metadata: Oriented size and format of the source image
        variant_defs: ProjectSettings, a settings document, or a bare
            ``{name: definition}`` mapping
        namespace: Project storage namespace (see project_namespace)
        upload_id: Per-upload identifier (see new_upload_id)

    Returns:
        One VariantTask per variant, ordered by variant name

    Raises:
        PlanningError: On any malformed definition or unsafe key segment.
            Nothing is dropped silently.
    """
    if not isinstance(image_metadata, ImageMetadata):
        try:
            image_metadata = ImageMetadata(**image_metadata)
        except (TypeError, ValueError) as e:
            raise PlanningError(f"invalid image metadata: {e}") from e

    _check_segment(namespace, "namespace")
    _check_segment(upload_id, "upload id")

    settings = ProjectSettings.from_document(_as_document(variant_defs))

    tasks = []
    for name in sorted(settings.variants):
        definition = settings.variants[name]
        try:
            fmt = resolve_format(definition, image_metadata)
        except PlanningError as e:
            raise PlanningError(str(e), variant=name) from e
        target_w, target_h = resolve_dimensions(definition, image_metadata)

        tasks.append(
            VariantTask(
                name=name,
                format=fmt,
                target_w=target_w,
                target_h=target_h,
                fit=definition.fit,
                quality=definition.quality,
                storage_key=variant_key(namespace, name, upload_id, fmt),
                content_type=CONTENT_TYPES[fmt],
            )
        )
    return tasks


def planned_keys(tasks: List[VariantTask]) -> Dict[str, str]:
    return {t.name: t.storage_key for t in tasks}


def _as_document(variant_defs: VariantDefs):
    if not isinstance(variant_defs, Mapping):
        return variant_defs
    entries = variant_defs["variants"] if "variants" in variant_defs else variant_defs
    if not isinstance(entries, Mapping):
        return {"variants": entries}
    # Allow already-validated VariantDefinition values in a plain mapping
    return {
        "variants": {
            name: (d.model_dump() if isinstance(d, VariantDefinition) else d)
            for name, d in entries.items()
        }
    }


def _check_segment(value: str, what: str) -> None:
    if not isinstance(value, str) or not _SAFE_SEGMENT_RE.match(value):
        raise PlanningError(f"{what} '{value}' is not a safe storage key segment")
