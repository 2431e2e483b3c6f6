# storyboard.py
import os
import io
import re
import json
import base64
import asyncio
from pathlib import Path
from typing import List, Optional, Literal, Tuple

from dotenv import load_dotenv
from pydantic import BaseModel, ConfigDict, Field, AliasChoices, TypeAdapter, ValidationError, field_validator
from PIL import Image, ImageDraw, ImageFont

# Google AI SDK (planning, analysis and image synthesis)
from google import genai
from google.genai import types

# Fal AI SDK (alternative image backend)
import fal_client
import requests

# ------------------ ENV & CONFIG ------------------
load_dotenv()
# Default credentials; a caller-supplied key always wins
API_KEY = os.getenv("GEMINI_API_KEY", "")
FAL_API_KEY = os.getenv("FAL_KEY") or os.getenv("FAL_API_KEY", "")

# Models (override via env if your account uses different names)
# text planning
LLM_MODEL = os.getenv("PLANNING_MODEL", "gemini-2.5-flash")
# reference image analysis for the character description
ANALYSIS_MODEL = os.getenv("ANALYSIS_MODEL", LLM_MODEL)
DEFAULT_IMAGE_MODEL = os.getenv("IMAGE_MODEL", "gemini-2.5-flash-image")
IMAGE_BACKEND = os.getenv("IMAGE_BACKEND", "gemini")
FAL_EDIT_ENDPOINT = os.getenv("FAL_EDIT_ENDPOINT", "fal-ai/nano-banana/edit")

BATCH_SIZE = int(os.getenv("BATCH_SIZE", "3"))
PANEL_SIZE = int(os.getenv("PANEL_SIZE", "1024"))
ANALYZE_REFERENCE = os.getenv("ANALYZE_REFERENCE", "1") == "1"
PRINT_PROMPTS = os.getenv("PRINT_PROMPTS", "1") == "1"

SCENE_COUNT = 9
DEFAULT_MOOD = "Cinematic"

STYLES = [
    "Cinematic Soft Light",
    "Children's Picture Book",
    "Warm Watercolor",
    "Colored Pencil",
    "Cyberpunk Neon",
    "Vintage Film Photography",
    "Studio Ghibli Style",
    "Oil Painting",
    "Noir Black and White",
]

ASPECT_RATIOS = {
    "16:9": "16:9 (YouTube/Landscape)",
    "9:16": "9:16 (Shorts/Portrait)",
}

GEMINI_MODELS = [
    {"value": "gemini-2.0-flash", "label": "Gemini 2.0 Flash (text only, placeholder panels)", "images": False},
    {"value": "gemini-2.5-flash-image", "label": "Gemini 2.5 Flash Image (Fast & Smart)", "images": True},
    {"value": "gemini-3-pro-image-preview", "label": "Gemini 3 Pro Image (High Quality)", "images": True},
]
IMAGE_MODELS = {m["value"] for m in GEMINI_MODELS if m["images"]}

SHOT_TYPES = [
    "Establishing wide shot",
    "Medium shot",
    "Close-up (emotion)",
    "3/4 angle or over-the-shoulder",
    "Action mid shot",
    "Detail shot (hands / object)",
    "Dramatic angle (low or backlight)",
    "Wide environmental shot",
    "Calm closing shot",
]

SCENE_STRUCTURE = [
    {"label": "Intro", "desc": "Start (World/Entrance)"},
    {"label": "Intro", "desc": "Start (World/Entrance)"},
    {"label": "Development", "desc": "Action/Relationship"},
    {"label": "Development", "desc": "Action/Relationship"},
    {"label": "Development", "desc": "Action/Relationship"},
    {"label": "Twist", "desc": "Problem/Emotion Change"},
    {"label": "Climax", "desc": "Peak Action"},
    {"label": "Climax", "desc": "Peak Action"},
    {"label": "Resolution", "desc": "Ending/Aftertaste"},
]

# ------------------ PROMPTS -----------------------
PROMPTS_DIR = Path(__file__).parent / "prompts"


def load_prompt(name: str) -> str:
    p = PROMPTS_DIR / f"{name}.txt"
    if not p.exists():
        raise FileNotFoundError(f"Prompt file not found: {p}")
    return p.read_text(encoding="utf-8")


SCENE_BREAKDOWN_TPL = load_prompt("scene_breakdown")
PANEL_IMAGE_TPL = load_prompt("panel_image")
PANEL_BRIEF_TPL = load_prompt("panel_brief")
CHARACTER_ANALYSIS_TPL = load_prompt("character_analysis")

# ------------------ ERRORS ------------------------


class StoryboardError(RuntimeError):
    pass


class ConfigurationFailure(StoryboardError):
    """Missing credential or reference image."""


class PlanningFailure(StoryboardError):
    """The story breakdown failed or came back unusable."""


class SynthesisFailure(StoryboardError):
    """One panel's image call failed or returned no usable image."""

# ------------------ UTILITIES ---------------------


def fill(template: str, **kv):
    """Replace only specific placeholders, leaving JSON braces alone."""
    out = template
    for k, v in kv.items():
        out = out.replace(f"{{{k}}}", str(v))
    return out


def ensure_dir(p: Path) -> None:
    p.mkdir(parents=True, exist_ok=True)


def slugify(text: str, fallback: str = "item") -> str:
    text = text.strip().lower()
    text = re.sub(r"[^a-z0-9]+", "-", text).strip("-")
    return text[:40].strip("-") or fallback


def strip_code_fences(text: str) -> str:
    return re.sub(r"```(?:json)?", "", text).strip()


def first_json_block(s: str) -> str:
    # Largest valid JSON object or array embedded in the text
    decoder = json.JSONDecoder()
    best_chunk = None
    for m in re.finditer(r"[\{\[]", s):
        try:
            _, end = decoder.raw_decode(s, m.start())
        except ValueError:
            continue
        chunk = s[m.start():end]
        if best_chunk is None or len(chunk) > len(best_chunk):
            best_chunk = chunk

    if best_chunk:
        return best_chunk
    raise ValueError("No valid JSON in model output")


def resolve_style(style: str) -> str:
    """Match a style label exactly, or by a unique case-insensitive fragment ("Watercolor")."""
    wanted = style.strip().lower()
    for s in STYLES:
        if s.lower() == wanted:
            return s
    matches = [s for s in STYLES if wanted and wanted in s.lower()]
    if len(matches) == 1:
        return matches[0]
    raise ValueError(f"Unknown style: {style!r}")


def aspect_size(aspect_ratio: str, long_edge: int = PANEL_SIZE) -> Tuple[int, int]:
    w, h = (int(x) for x in aspect_ratio.split(":"))
    if w >= h:
        return long_edge, max(1, round(long_edge * h / w))
    return max(1, round(long_edge * w / h)), long_edge


def sniff_mime_type(data: Optional[bytes], default: str = "image/jpeg") -> str:
    if not data:
        return default
    try:
        with Image.open(io.BytesIO(data)) as img:
            return Image.MIME.get(img.format, default)
    except (OSError, ValueError):
        return default


def decode_data_url(value: str) -> Tuple[bytes, Optional[str]]:
    """Split a ``data:image/...;base64,`` string into bytes and mime type."""
    m = re.match(r"^data:(image/[\w.+-]+);base64,", value)
    if m:
        return base64.b64decode(value[m.end():]), m.group(1)
    return base64.b64decode(value), None


def image_bytes_to_pil(b: bytes) -> Image.Image:
    return Image.open(io.BytesIO(b)).convert("RGBA")


def pil_to_png_bytes(img: Image.Image) -> bytes:
    """Converts a PIL Image object to PNG bytes."""
    buf = io.BytesIO()
    img.save(buf, format="PNG")
    return buf.getvalue()


def resize_to_fill(img: Image.Image, width: int, height: int) -> Image.Image:
    """Resize image to fill the target box without padding, cropping the overflow."""
    w, h = img.size
    scale = max(width / w, height / h)  # Scale to fill, not fit
    new_w, new_h = max(width, round(w * scale)), max(height, round(h * scale))
    img = img.resize((new_w, new_h), resample=Image.LANCZOS)

    left = (new_w - width) // 2
    top = (new_h - height) // 2
    return img.crop((left, top, left + width, top + height))


FONT_PATHS = [
    "/System/Library/Fonts/Helvetica.ttc",  # macOS
    "/usr/share/fonts/truetype/dejavu/DejaVuSans.ttf",  # Linux
    "arial.ttf",  # Windows
]


def load_font(size: int):
    for font_path in FONT_PATHS:
        try:
            return ImageFont.truetype(font_path, size)
        except OSError:
            continue
    return ImageFont.load_default()


def wrap_text(text: str, font, max_width: int, draw) -> List[str]:
    """
    Wrap text to fit within a maximum width, breaking at word boundaries.
    """
    words = text.split()
    lines = []
    current_line = ""

    for word in words:
        test_line = current_line + (" " if current_line else "") + word
        bbox = draw.textbbox((0, 0), test_line, font=font)

        if bbox[2] - bbox[0] <= max_width:
            current_line = test_line
        else:
            if current_line:
                lines.append(current_line)
                current_line = word
            else:
                # Single word is too long, just add it anyway
                lines.append(word)
                current_line = ""

    if current_line:
        lines.append(current_line)

    return lines

# ------------------ DATA MODELS -------------------


class StoryConfig(BaseModel):
    model_config = ConfigDict(frozen=True)

    story_text: str
    aspect_ratio: Literal["16:9", "9:16"] = "16:9"
    style: str = STYLES[0]
    show_captions: bool = True
    reference_image: Optional[bytes] = Field(default=None, repr=False)
    reference_mime: Optional[str] = None
    # Caller-supplied credential overriding GEMINI_API_KEY
    api_key: Optional[str] = Field(default=None, repr=False)
    model: str = DEFAULT_IMAGE_MODEL
    backend: str = IMAGE_BACKEND

    @field_validator("story_text")
    @classmethod
    def _story_required(cls, v: str) -> str:
        if not v.strip():
            raise ValueError("Story text is required")
        return v.strip()

    @field_validator("style")
    @classmethod
    def _known_style(cls, v: str) -> str:
        return resolve_style(v)

    @field_validator("api_key")
    @classmethod
    def _blank_key_is_none(cls, v: Optional[str]) -> Optional[str]:
        return v.strip() or None if v else None

    @field_validator("backend")
    @classmethod
    def _known_backend(cls, v: str) -> str:
        if v not in BACKENDS:
            raise ValueError(f"Unknown image backend: {v!r}")
        return v

    @property
    def reference_mime_type(self) -> str:
        return self.reference_mime or sniff_mime_type(self.reference_image)


class Scene(BaseModel):
    model_config = ConfigDict(frozen=True)

    position: int = Field(ge=1, le=SCENE_COUNT)
    description: str
    caption: str
    mood: str = DEFAULT_MOOD
    video_prompt: str
    shot_type: str
    act: str


class SceneDraft(BaseModel):
    """One raw item of the planner response; accepts the key variants models emit."""
    position: Optional[int] = Field(
        default=None, validation_alias=AliasChoices("position", "scene_number", "sceneNumber"))
    description: str = Field(min_length=1)
    caption: str = Field(min_length=1, validation_alias=AliasChoices("caption", "text"))
    mood: Optional[str] = None
    shot_type: Optional[str] = Field(
        default=None, validation_alias=AliasChoices("shotType", "shot_type"))
    video_prompt: Optional[str] = Field(
        default=None, validation_alias=AliasChoices("videoPrompt", "video_prompt"))


SCENE_DRAFTS = TypeAdapter(List[SceneDraft])


class PanelImage(BaseModel):
    model_config = ConfigDict(frozen=True)

    data: bytes = Field(repr=False)
    mime_type: str = "image/png"
    is_fallback: bool = False

    @property
    def data_url(self) -> str:
        return f"data:{self.mime_type};base64,{base64.b64encode(self.data).decode('ascii')}"


class Panel(BaseModel):
    id: int
    scene: Scene
    image: Optional[PanelImage] = None
    loading: bool = True
    error: Optional[str] = None

# --- Simple prompt logger (stdout + file) ---


class PromptLogger:
    def __init__(self, out_file: Optional[Path] = None):
        self.out_file = out_file
        self.lines: List[str] = []

    def log(self, title: str, content: str):
        block = f"\n===== {title} =====\n{content.strip()}\n"
        self.lines.append(block)
        if PRINT_PROMPTS:
            print(block)

    def flush(self):
        if self.out_file is not None:
            ensure_dir(self.out_file.parent)
            self.out_file.write_text("".join(self.lines), encoding="utf-8")

# ------------------ GENAI BACKENDS ----------------


def response_text(resp) -> str:
    if getattr(resp, "text", ""):
        return resp.text
    out = []
    for c in getattr(resp, "candidates", []) or []:
        for p in getattr(getattr(c, "content", None), "parts", None) or []:
            if getattr(p, "text", None):
                out.append(p.text)
    return "\n".join(out).strip()


def extract_inline_image(resp) -> Optional[PanelImage]:
    for c in getattr(resp, "candidates", []) or []:
        for p in getattr(getattr(c, "content", None), "parts", None) or []:
            inline_data = getattr(p, "inline_data", None)
            data = getattr(inline_data, "data", None) if inline_data is not None else None
            if not data:
                continue
            mime = getattr(inline_data, "mime_type", None) or "image/png"
            if isinstance(data, str):
                data = base64.b64decode(data)
            return PanelImage(data=bytes(data), mime_type=mime)
    return None


def download_image(url: str) -> PanelImage:
    response = requests.get(url, timeout=120)
    if response.status_code != 200:
        raise RuntimeError(f"Failed to download image: {response.status_code}")
    # Validate that it's actually image data
    with Image.open(io.BytesIO(response.content)) as img:
        mime = Image.MIME.get(img.format, "image/png")
    return PanelImage(data=response.content, mime_type=mime)


class GenerationBackend:
    """One hosted generation service. Capabilities: plan_text, describe_image, synthesize_image."""
    name = "base"

    def supports_images(self, model: str) -> bool:
        return False

    async def plan_text(self, prompt: str, model: str = LLM_MODEL) -> str:
        raise ConfigurationFailure(f"The {self.name} backend cannot generate text")

    async def describe_image(self, prompt: str, image: bytes, mime_type: str, model: str = ANALYSIS_MODEL) -> str:
        raise ConfigurationFailure(f"The {self.name} backend cannot analyse images")

    async def synthesize_image(self, prompt: str, reference: bytes, reference_mime: str,
                               model: str, aspect_ratio: str) -> Optional[PanelImage]:
        raise ConfigurationFailure(f"The {self.name} backend cannot generate images")


class GeminiBackend(GenerationBackend):
    name = "gemini"

    def __init__(self, api_key: Optional[str] = None):
        key = (api_key or API_KEY or "").strip()
        if not key:
            raise ConfigurationFailure("Gemini API key is missing. Please enter your key.")
        self.client = genai.Client(api_key=key)

    def supports_images(self, model: str) -> bool:
        return model in IMAGE_MODELS or "image" in model

    # Text planning, JSON mode
    async def plan_text(self, prompt: str, model: str = LLM_MODEL) -> str:
        resp = await self.client.aio.models.generate_content(
            model=model,
            contents=prompt,
            config=types.GenerateContentConfig(response_mime_type="application/json"),
        )
        return response_text(resp)

    async def describe_image(self, prompt: str, image: bytes, mime_type: str, model: str = ANALYSIS_MODEL) -> str:
        resp = await self.client.aio.models.generate_content(
            model=model,
            contents=[types.Part.from_bytes(data=image, mime_type=mime_type), prompt],
        )
        return response_text(resp)

    async def synthesize_image(self, prompt: str, reference: bytes, reference_mime: str,
                               model: str, aspect_ratio: str) -> Optional[PanelImage]:
        resp = await self.client.aio.models.generate_content(
            model=model,
            contents=[prompt, types.Part.from_bytes(data=reference, mime_type=reference_mime)],
            config=types.GenerateContentConfig(
                response_modalities=["TEXT", "IMAGE"],
                image_config=types.ImageConfig(aspect_ratio=aspect_ratio),
            ),
        )
        return extract_inline_image(resp)


class FalBackend(GenerationBackend):
    """Fal AI nano banana edit endpoint; images only."""
    name = "fal"

    def __init__(self, api_key: Optional[str] = None):
        key = (api_key or FAL_API_KEY or "").strip()
        if not key:
            raise ConfigurationFailure("Fal API key is missing. Set FAL_KEY in .env.")
        self.client = fal_client.AsyncClient(key=key)

    def supports_images(self, model: str) -> bool:
        return True

    async def synthesize_image(self, prompt: str, reference: bytes, reference_mime: str,
                               model: str, aspect_ratio: str) -> Optional[PanelImage]:
        endpoint = model if model.startswith("fal-ai/") else FAL_EDIT_ENDPOINT
        base64_data = base64.b64encode(reference).decode("utf-8")
        result = await self.client.subscribe(
            endpoint,
            arguments={
                "prompt": prompt,
                "image_urls": [f"data:{reference_mime};base64,{base64_data}"],
                "num_images": 1,
                "aspect_ratio": aspect_ratio,
                "output_format": "png",
            },
        )
        images = result.get("images") or []
        if not images:
            return None
        # requests is blocking; keep it off the event loop
        return await asyncio.to_thread(download_image, images[0]["url"])


BACKENDS = {
    "gemini": GeminiBackend,
    "fal": FalBackend,
}


def get_backend(name: str, api_key: Optional[str] = None) -> GenerationBackend:
    try:
        cls = BACKENDS[name]
    except KeyError:
        raise ConfigurationFailure(f"Unknown backend: {name!r}") from None
    return cls(api_key)


def backends_for(config: StoryConfig) -> Tuple[GenerationBackend, GenerationBackend]:
    """Text backend (always Gemini) and image backend for one run."""
    text_backend = GeminiBackend(config.api_key)
    if config.backend == "gemini":
        return text_backend, text_backend
    return text_backend, get_backend(config.backend)

# ------------------ SCENE PLANNER -----------------


def build_breakdown_prompt(story_text: str, style: str) -> str:
    structure = "\n".join(f"{i}. {s['label']} - {s['desc']}"
                          for i, s in enumerate(SCENE_STRUCTURE, start=1))
    shot_types = "\n".join(f"{i}. {shot}" for i, shot in enumerate(SHOT_TYPES, start=1))
    return fill(SCENE_BREAKDOWN_TPL, scene_count=SCENE_COUNT, story=story_text, style=style,
                structure=structure, shot_types=shot_types)


def parse_breakdown(raw: str) -> List[Scene]:
    if not raw or not raw.strip():
        raise PlanningFailure("The story breakdown came back empty")

    cleaned = strip_code_fences(raw)
    try:
        data = json.loads(cleaned)
    except json.JSONDecodeError:
        try:
            data = json.loads(first_json_block(cleaned))
        except ValueError as e:
            raise PlanningFailure("The story breakdown is not valid JSON") from e

    if isinstance(data, dict):
        data = data.get("scenes")
    if not isinstance(data, list):
        raise PlanningFailure("The story breakdown is not a list of scenes")
    if len(data) != SCENE_COUNT:
        raise PlanningFailure(f"Expected {SCENE_COUNT} scenes, got {len(data)}")

    try:
        drafts = SCENE_DRAFTS.validate_python(data)
    except ValidationError as e:
        raise PlanningFailure(
            f"The story breakdown is missing required scene fields ({e.error_count()} problems)") from e

    # Trust the model's numbering only when it is exactly 1..9
    positions = [d.position for d in drafts]
    if None not in positions and sorted(positions) == list(range(1, SCENE_COUNT + 1)):
        drafts = sorted(drafts, key=lambda d: d.position)

    scenes = []
    for i, d in enumerate(drafts, start=1):
        description = d.description.strip()
        scenes.append(Scene(
            position=i,
            description=description,
            caption=d.caption.strip(),
            mood=(d.mood or "").strip() or DEFAULT_MOOD,
            video_prompt=(d.video_prompt or "").strip() or description,
            # Fixed per position, whatever the model suggested
            shot_type=SHOT_TYPES[i - 1],
            act=SCENE_STRUCTURE[i - 1]["label"],
        ))
    return scenes


async def plan_scenes(backend: GenerationBackend, story_text: str, style: str,
                      model: str = LLM_MODEL, logger: Optional[PromptLogger] = None) -> List[Scene]:
    prompt = build_breakdown_prompt(story_text, style)
    if logger:
        logger.log("SCENE_BREAKDOWN_PROMPT", prompt)

    try:
        raw = await backend.plan_text(prompt, model)
    except ConfigurationFailure:
        raise
    except Exception as e:
        raise PlanningFailure(f"Story breakdown failed: {e}") from e

    if logger:
        logger.log("SCENE_BREAKDOWN_RESPONSE", raw or "<empty>")
    return parse_breakdown(raw)

# ------------------ PANEL SYNTHESIZER -------------


class CharacterMemo:
    """Character description derived once per run from the reference image.

    Concurrent panels share one analysis call. A new run must get a new memo
    (or call ``clear``) so descriptions never leak between reference images.
    """

    def __init__(self, backend: GenerationBackend, config: StoryConfig,
                 logger: Optional[PromptLogger] = None, enabled: bool = ANALYZE_REFERENCE):
        self.backend = backend
        self.config = config
        self.logger = logger
        self.enabled = enabled
        self._task: Optional[asyncio.Task] = None

    async def get(self) -> str:
        if not self.enabled or not self.config.reference_image:
            return ""
        if self._task is None:
            self._task = asyncio.ensure_future(self._analyze())
        return await asyncio.shield(self._task)

    def clear(self) -> None:
        self._task = None

    async def _analyze(self) -> str:
        try:
            text = await self.backend.describe_image(
                CHARACTER_ANALYSIS_TPL, self.config.reference_image, self.config.reference_mime_type)
        except Exception as e:
            print(f"   ! Character analysis failed: {e}. Continuing without a description.")
            return ""
        if self.logger:
            self.logger.log("CHARACTER_DESCRIPTION", text or "<empty>")
        return (text or "").strip()


def build_panel_prompt(scene: Scene, config: StoryConfig, character_description: str = "") -> str:
    description_line = f"- Character notes: {character_description}" if character_description else ""
    return fill(PANEL_IMAGE_TPL,
                character_description=description_line,
                position=scene.position,
                act=scene.act,
                description=scene.description,
                shot_type=scene.shot_type,
                mood=scene.mood,
                style=config.style,
                aspect_ratio=config.aspect_ratio)


def render_placeholder(scene: Scene, aspect_ratio: str, brief: str = "", long_edge: int = PANEL_SIZE) -> bytes:
    """Descriptive stand-in card for models that cannot return image data."""
    width, height = aspect_size(aspect_ratio, long_edge)
    canvas = Image.new("RGB", (width, height), (30, 41, 59))
    draw = ImageDraw.Draw(canvas)
    margin = max(16, width // 20)
    title_font = load_font(max(14, long_edge // 24))
    body_font = load_font(max(12, long_edge // 40))

    y = margin
    title = f"Scene {scene.position} - {scene.shot_type}"
    draw.text((margin, y), title, fill=(147, 197, 253), font=title_font)
    y += draw.textbbox((0, 0), title, font=title_font)[3] + margin // 2

    for text, color in ((scene.caption, (255, 255, 255)), (brief or scene.description, (203, 213, 225))):
        for line in wrap_text(text, body_font, width - 2 * margin, draw):
            line_h = draw.textbbox((0, 0), line, font=body_font)[3] + 4
            if y + line_h > height - margin:
                break
            draw.text((margin, y), line, fill=color, font=body_font)
            y += line_h
        y += margin // 2

    return pil_to_png_bytes(canvas)


async def _render_fallback(backend: GenerationBackend, scene: Scene, config: StoryConfig,
                           logger: Optional[PromptLogger] = None) -> PanelImage:
    prompt = fill(PANEL_BRIEF_TPL, position=scene.position, style=config.style, shot_type=scene.shot_type,
                  mood=scene.mood, description=scene.description, aspect_ratio=config.aspect_ratio)
    if logger:
        logger.log(f"PANEL_BRIEF_PROMPT [#{scene.position}]", prompt)
    try:
        brief = await backend.describe_image(prompt, config.reference_image, config.reference_mime_type, config.model)
    except Exception as e:
        print(f"   ! Brief for panel {scene.position} failed: {e}. Using the scene description.")
        brief = ""
    png = render_placeholder(scene, config.aspect_ratio, brief.strip())
    return PanelImage(data=png, mime_type="image/png", is_fallback=True)


async def synthesize_panel(backend: GenerationBackend, scene: Scene, config: StoryConfig,
                           memo: Optional[CharacterMemo] = None,
                           logger: Optional[PromptLogger] = None) -> PanelImage:
    """
    Render one panel for a scene.

    Text-only models get a placeholder card (is_fallback=True) instead of an
    error; an image-capable model that returns no inline image raises
    SynthesisFailure.
    """
    if not config.reference_image:
        raise ConfigurationFailure("A character reference image is required")

    try:
        if not backend.supports_images(config.model):
            return await _render_fallback(backend, scene, config, logger)

        character_description = await memo.get() if memo else ""
        prompt = build_panel_prompt(scene, config, character_description)
        if logger:
            logger.log(f"PANEL_IMAGE_PROMPT [#{scene.position}]", prompt)
        image = await backend.synthesize_image(
            prompt, config.reference_image, config.reference_mime_type, config.model, config.aspect_ratio)
    except StoryboardError:
        raise
    except Exception as e:
        raise SynthesisFailure(f"Panel {scene.position} generation failed: {e}") from e

    if image is None:
        raise SynthesisFailure(f"Panel {scene.position}: the model returned no image")
    return image

# ------------------ LAYOUT ------------------------


def create_storyboard_grid(panels: List[Panel], aspect_ratio: str, show_captions: bool = True,
                           cell_long_edge: int = 512) -> Image.Image:
    """Stitch panels into the 3x3 sequence; missing images become grey tiles."""
    if not panels:
        raise ValueError("No panels to stitch together")

    cols = 3
    rows = (len(panels) + cols - 1) // cols
    cell_w, cell_h = aspect_size(aspect_ratio, cell_long_edge)
    caption_font = load_font(max(12, cell_long_edge // 32))
    caption_h = cell_long_edge // 8 if show_captions else 0
    spacing = 12
    margin = 20

    canvas_width = cols * cell_w + (cols - 1) * spacing + 2 * margin
    canvas_height = rows * (cell_h + caption_h) + (rows - 1) * spacing + 2 * margin
    canvas = Image.new("RGB", (canvas_width, canvas_height), "white")
    draw = ImageDraw.Draw(canvas)

    for i, panel in enumerate(sorted(panels, key=lambda p: p.id)):
        x = margin + (i % cols) * (cell_w + spacing)
        y = margin + (i // cols) * (cell_h + caption_h + spacing)

        if panel.image is not None:
            tile = resize_to_fill(image_bytes_to_pil(panel.image.data), cell_w, cell_h).convert("RGB")
            canvas.paste(tile, (x, y))
        else:
            label = "Generation failed" if panel.error else "Pending"
            draw.rectangle([x, y, x + cell_w, y + cell_h], fill=(120, 120, 120))
            draw.text((x + 10, y + 10), f"{panel.id}. {label}", fill="white", font=caption_font)

        if show_captions:
            lines = wrap_text(panel.scene.caption, caption_font, cell_w - 8, draw)
            ty = y + cell_h + 4
            for line in lines[:2]:
                draw.text((x + 4, ty), line, fill="black", font=caption_font)
                ty += draw.textbbox((0, 0), line, font=caption_font)[3] + 2

    return canvas
