import io
from typing import Callable, Dict, Optional, Tuple

import structlog
from PIL import Image, ImageCms, ImageOps

from image_service.errors import InvalidCropGeometry, TransformationFailed
from image_service.schemas import (
    CropSpec, FitPolicy, OutputFormat, ResizeSpec, TransformationSpec
)

logger = structlog.get_logger(__name__)

DEFAULT_FORMAT = OutputFormat.WEBP
FORMAT_ALIASES = {"jpg": OutputFormat.JPEG.value}
TRANSPARENT_BLACK = (0, 0, 0, 0)
OPAQUE_BLACK = (0, 0, 0)

_SRGB_PROFILE = ImageCms.createProfile("sRGB")


def resolve_format(name: Optional[str]) -> OutputFormat:
    """Map a requested format name onto a supported encoder, defaulting to webp"""
    if not name:
        return DEFAULT_FORMAT
    name = FORMAT_ALIASES.get(name.lower(), name.lower())
    try:
        return OutputFormat(name)
    except ValueError:
        logger.warning("Unsupported output format, using default", requested=name, fallback=DEFAULT_FORMAT.value)
        return DEFAULT_FORMAT


def mime_type_for(fmt: OutputFormat) -> str:
    return f"image/{fmt.value}"


def _has_alpha(image: Image.Image) -> bool:
    return image.mode in ("RGBA", "LA", "PA", "La", "RGBa") or (
        image.mode == "P" and "transparency" in image.info
    )


# Stages

def crop(image: Image.Image, spec: CropSpec) -> Image.Image:
    right = spec.x + spec.width
    bottom = spec.y + spec.height
    if right > image.width or bottom > image.height:
        raise InvalidCropGeometry(
            f"Crop region {spec.width}x{spec.height}+{spec.x}+{spec.y} "
            f"exceeds source image {image.width}x{image.height}"
        )
    return image.crop((spec.x, spec.y, right, bottom))


def _target_size(image: Image.Image, spec: ResizeSpec) -> Tuple[int, int]:
    if spec.width and spec.height:
        return spec.width, spec.height
    # one dimension given, derive the other from the aspect ratio
    if spec.width:
        return spec.width, max(1, round(image.height * spec.width / image.width))
    return max(1, round(image.width * spec.height / image.height)), spec.height


def resize(image: Image.Image, spec: ResizeSpec) -> Image.Image:
    width, height = _target_size(image, spec)
    fit = spec.fit

    if fit == FitPolicy.FILL:
        return image.resize((width, height), Image.Resampling.LANCZOS)

    if fit == FitPolicy.COVER:
        return ImageOps.fit(image, (width, height), Image.Resampling.LANCZOS)

    if fit == FitPolicy.CONTAIN:
        if image.mode not in ("RGB", "RGBA", "L", "LA", "P"):
            image = image.convert("RGB")
        if image.mode != "RGBA":
            image = image.convert("RGBA")
        return ImageOps.pad(image, (width, height), Image.Resampling.LANCZOS, color=TRANSPARENT_BLACK)

    # inside / outside keep the aspect ratio and may exceed the box on one side
    ratio_w = width / image.width
    ratio_h = height / image.height
    scale = min(ratio_w, ratio_h) if fit == FitPolicy.INSIDE else max(ratio_w, ratio_h)
    size = (max(1, round(image.width * scale)), max(1, round(image.height * scale)))
    return image.resize(size, Image.Resampling.LANCZOS)


def rotate(image: Image.Image, degrees: float) -> Image.Image:
    degrees = degrees % 360
    if degrees == 0:
        return image

    if image.mode not in ("RGB", "RGBA", "L", "LA"):
        image = image.convert("RGBA" if _has_alpha(image) else "RGB")

    fill = TRANSPARENT_BLACK if _has_alpha(image) else OPAQUE_BLACK
    if image.mode in ("L", "LA"):
        fill = fill[0] if image.mode == "L" else (0, 0)

    # PIL rotates counter-clockwise; requests are expressed clockwise
    return image.rotate(-degrees, resample=Image.Resampling.BICUBIC, expand=True, fillcolor=fill)


def grayscale(image: Image.Image) -> Image.Image:
    if _has_alpha(image):
        return image.convert("LA")
    return image.convert("L")


def to_srgb(image: Image.Image) -> Image.Image:
    """Apply the embedded ICC profile, if any, so later stages work on sRGB pixels"""
    icc_profile = image.info.get("icc_profile")
    if not icc_profile:
        return image

    if image.mode not in ("RGB", "RGBA", "CMYK", "L", "LA"):
        image = image.convert("RGBA" if _has_alpha(image) else "RGB")

    try:
        source = ImageCms.ImageCmsProfile(io.BytesIO(icc_profile))
        alpha = image.getchannel("A") if image.mode in ("RGBA", "LA") else None
        base = image
        if alpha is not None:
            base = image.convert("RGB" if image.mode == "RGBA" else "L")
        converted = ImageCms.profileToProfile(base, source, _SRGB_PROFILE, outputMode="RGB")
        if alpha is not None:
            converted.putalpha(alpha)
    except (ImageCms.PyCMSError, OSError) as e:
        logger.warning("Embedded ICC profile could not be applied", error=str(e))
        return image

    converted.info.pop("icc_profile", None)
    return converted


def normalize_colorspace(image: Image.Image) -> Image.Image:
    """Settle on an RGB or RGBA layout tagged as sRGB"""
    target_mode = "RGBA" if _has_alpha(image) else "RGB"
    if image.mode != target_mode:
        image = image.convert(target_mode)
    image.info.pop("icc_profile", None)
    return image


# Encoders

def _encode_avif(image: Image.Image, spec: TransformationSpec, buffer: io.BytesIO):
    image.save(buffer, format="AVIF", quality=spec.quality, subsampling="4:4:4", speed=6)


def _encode_webp(image: Image.Image, spec: TransformationSpec, buffer: io.BytesIO):
    image.save(buffer, format="WEBP", quality=spec.quality, lossless=spec.lossless, method=4)


def _encode_png(image: Image.Image, spec: TransformationSpec, buffer: io.BytesIO):
    # png is lossless, quality does not apply
    image.save(buffer, format="PNG", optimize=True, compress_level=6)


def _encode_jpeg(image: Image.Image, spec: TransformationSpec, buffer: io.BytesIO):
    if image.mode != "RGB":
        image = image.convert("RGB")
    image.save(
        buffer,
        format="JPEG",
        quality=spec.quality,
        optimize=True,
        progressive=True,
        subsampling=0,  # 4:4:4
    )


ENCODERS: Dict[OutputFormat, Callable[[Image.Image, TransformationSpec, io.BytesIO], None]] = {
    OutputFormat.AVIF: _encode_avif,
    OutputFormat.WEBP: _encode_webp,
    OutputFormat.PNG: _encode_png,
    OutputFormat.JPEG: _encode_jpeg,
}


class ImageProcessor:
    """Applies a transformation spec to raw image bytes.

    Stages always run in the same order regardless of which are present:
    ICC conversion to sRGB, crop, resize, rotate, grayscale, output
    mode normalisation, encode.
    The processor holds no per-request state and does no I/O.
    """

    def __init__(self, max_image_pixels: Optional[int] = None):
        self.max_image_pixels = max_image_pixels

    def apply(self, source: bytes, spec: TransformationSpec) -> bytes:
        """
        Transform and encode an image

        Args:
            source: Encoded bytes of the original image
            spec: Requested operations and output encoding

        Returns:
            Encoded bytes in the effective output format
        """
        fmt = resolve_format(spec.format)
        try:
            image = to_srgb(self._load_image(source))

            if spec.crop:
                image = crop(image, spec.crop)
            if spec.resize:
                image = resize(image, spec.resize)
            if spec.rotate:
                image = rotate(image, spec.rotate)
            if spec.grayscale:
                image = grayscale(image)

            image = normalize_colorspace(image)

            buffer = io.BytesIO()
            ENCODERS[fmt](image, spec, buffer)
            return buffer.getvalue()

        except TransformationFailed:
            raise
        except Exception as e:
            logger.error("Image transformation failed", format=fmt.value, error=str(e))
            raise TransformationFailed("Failed to apply transformations to image") from e

    def _load_image(self, source: bytes) -> Image.Image:
        if not source:
            raise TransformationFailed("Source image is empty")

        image = Image.open(io.BytesIO(source))
        if self.max_image_pixels and image.width * image.height > self.max_image_pixels:
            raise TransformationFailed(f"Source image too large: {image.width}x{image.height}")

        # multi-frame sources are reduced to their first frame
        if getattr(image, "n_frames", 1) > 1:
            image.seek(0)
        image.load()
        return image
