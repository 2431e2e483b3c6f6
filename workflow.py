# workflow.py
import sys
import json
import uuid
import asyncio
import argparse
from enum import Enum
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Tuple

from storyboard import (
    BATCH_SIZE, LLM_MODEL, ASPECT_RATIOS, STYLES, DEFAULT_IMAGE_MODEL, IMAGE_BACKEND,
    CharacterMemo, ConfigurationFailure, GenerationBackend, Panel, PanelImage, PromptLogger,
    Scene, StoryConfig, backends_for, create_storyboard_grid, ensure_dir, plan_scenes,
    slugify, synthesize_panel,
)

BackendFactory = Callable[[StoryConfig], Tuple[GenerationBackend, GenerationBackend]]
Listener = Callable[[Dict[str, Any]], None]


class AppState(str, Enum):
    INPUT = "INPUT"
    PLANNING = "PLANNING"  # Generating text breakdown
    GENERATING = "GENERATING"  # Generating images
    COMPLETE = "COMPLETE"


def describe_error(error: BaseException) -> str:
    return str(error) or error.__class__.__name__


def batched(items: List[Panel], size: int) -> List[List[Panel]]:
    return [items[i:i + size] for i in range(0, len(items), size)]


class RunContext:
    """Everything one run owns: config, backends, prompt log and the character memo."""

    def __init__(self, config: StoryConfig, text_backend: GenerationBackend,
                 image_backend: GenerationBackend, logger: PromptLogger, run_id: Optional[str] = None):
        self.id = run_id or uuid.uuid4().hex[:8]
        self.config = config
        self.text_backend = text_backend
        self.image_backend = image_backend
        self.logger = logger
        self.memo = CharacterMemo(text_backend, config, logger)
        # Set by reset; completions of an expired run are dropped
        self.expired = False

    async def synthesize(self, scene: Scene) -> PanelImage:
        return await synthesize_panel(self.image_backend, scene, self.config, self.memo, self.logger)


class Orchestrator:
    """
    Runs INPUT -> PLANNING -> GENERATING -> COMPLETE for one story at a time.

    All methods must be called from the event loop the runs execute on; state
    changes between awaits are therefore atomic. Listeners receive a snapshot
    after every transition and after every applied batch.
    """

    def __init__(self, backend_factory: BackendFactory = backends_for, batch_size: int = BATCH_SIZE,
                 planning_model: str = LLM_MODEL, log_dir: Optional[Path] = None):
        if batch_size < 1:
            raise ValueError("batch_size must be at least 1")
        self.backend_factory = backend_factory
        self.batch_size = batch_size
        self.planning_model = planning_model
        self.log_dir = log_dir
        self.state = AppState.INPUT
        self.panels: List[Panel] = []
        self.last_error: Optional[str] = None
        self._run: Optional[RunContext] = None
        self._listeners: List[Listener] = []

    @property
    def config(self) -> Optional[StoryConfig]:
        return self._run.config if self._run else None

    @property
    def run_id(self) -> Optional[str]:
        return self._run.id if self._run else None

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        self._listeners.append(listener)
        return lambda: self._listeners.remove(listener)

    def _notify(self) -> None:
        snapshot = self.snapshot()
        for listener in list(self._listeners):
            listener(snapshot)

    def _set_state(self, state: AppState) -> None:
        self.state = state
        self._notify()

    def get_panel(self, panel_id: int) -> Optional[Panel]:
        for p in self.panels:
            if p.id == panel_id:
                return p
        return None

    def snapshot(self) -> Dict[str, Any]:
        config = self.config
        return {
            "state": self.state.value,
            "run": self.run_id,
            "error": self.last_error,
            "config": None if config is None else {
                "story_text": config.story_text,
                "style": config.style,
                "aspect_ratio": config.aspect_ratio,
                "show_captions": config.show_captions,
                "model": config.model,
                "backend": config.backend,
            },
            "panels": [{
                "id": p.id,
                "loading": p.loading,
                "error": p.error,
                "has_image": p.image is not None,
                "is_fallback": bool(p.image and p.image.is_fallback),
                "scene": p.scene.model_dump(),
            } for p in self.panels],
        }

    def check_config(self, config: StoryConfig) -> Tuple[GenerationBackend, GenerationBackend]:
        """Reject a run before any network call; returns the run's backends."""
        if not config.reference_image:
            raise ConfigurationFailure("Upload a character reference image before starting")
        return self.backend_factory(config)

    async def start(self, config: StoryConfig, run_id: Optional[str] = None) -> List[Panel]:
        text_backend, image_backend = self.check_config(config)

        # A new run discards the previous one, memo included
        self.reset()
        logger = PromptLogger()
        run = RunContext(config, text_backend, image_backend, logger, run_id)
        if self.log_dir is not None:
            logger.out_file = self.log_dir / f"prompts-{run.id}.txt"
        self._run = run
        self.last_error = None
        self._set_state(AppState.PLANNING)

        try:
            print(">> Planning scenes...")
            scenes = await plan_scenes(run.text_backend, config.story_text, config.style,
                                       self.planning_model, logger)
            if run.expired:
                return []
            print(f"   Scenes: {len(scenes)}")

            self.panels = [Panel(id=s.position, scene=s) for s in scenes]
            self._set_state(AppState.GENERATING)

            batches = batched(self.panels, self.batch_size)
            for n, batch in enumerate(batches, start=1):
                print(f">> Rendering batch {n}/{len(batches)}: panels {[p.id for p in batch]}")
                outcomes = await asyncio.gather(*(run.synthesize(p.scene) for p in batch),
                                                return_exceptions=True)
                if run.expired:
                    return []
                self._apply_batch(batch, outcomes)

            # Failed panels stay retryable; they never block completion
            self._set_state(AppState.COMPLETE)
            print(">> Done.")
            return self.panels
        except Exception as e:
            if run is not self._run:
                print(f"   ! Discarded run {run.id} failed after reset: {e}")
                return []
            print(f"   ! Run failed: {e}")
            self._discard_run()
            self.last_error = describe_error(e)
            self._set_state(AppState.INPUT)
            raise
        finally:
            logger.flush()

    def _apply_batch(self, batch: List[Panel], outcomes: List[Any]) -> None:
        updates: Dict[int, Dict[str, Any]] = {}
        for panel, outcome in zip(batch, outcomes):
            if isinstance(outcome, BaseException):
                print(f"   ! Panel {panel.id} failed: {outcome}")
                updates[panel.id] = {"image": None, "loading": False, "error": describe_error(outcome)}
            else:
                print(f"   ✓ Panel {panel.id}")
                updates[panel.id] = {"image": outcome, "loading": False, "error": None}
        # One replacement, one notification per batch
        self.panels = [p.model_copy(update=updates[p.id]) if p.id in updates else p for p in self.panels]
        self._notify()

    def _update_panel(self, panel_id: int, **changes) -> Optional[Panel]:
        updated = None
        panels = []
        for p in self.panels:
            if p.id == panel_id:
                p = updated = p.model_copy(update=changes)
            panels.append(p)
        self.panels = panels
        self._notify()
        return updated

    def regenerable(self, panel_id: int) -> Optional[Panel]:
        """The panel, if a retry may start now: the run is complete and the panel has settled."""
        panel = self.get_panel(panel_id)
        if self._run is None or panel is None:
            return None
        if self.state is not AppState.COMPLETE or panel.loading:
            return None
        return panel

    async def regenerate(self, panel_id: int) -> Optional[Panel]:
        """
        Re-render one panel outside the batch pipeline.

        No-op while batches are still running, while the same panel is already
        being retried, or without an active run.
        """
        run = self._run
        panel = self.regenerable(panel_id)
        if panel is None:
            return None

        self._update_panel(panel_id, loading=True, error=None)
        print(f">> Regenerating panel {panel_id}...")
        try:
            image = await run.synthesize(panel.scene)
        except Exception as e:
            print(f"   ! Panel {panel_id} failed again: {e}")
            changes = {"image": None, "loading": False, "error": describe_error(e)}
        else:
            print(f"   ✓ Panel {panel_id}")
            changes = {"image": image, "loading": False, "error": None}

        if run.expired:
            return None
        return self._update_panel(panel_id, **changes)

    def _discard_run(self) -> None:
        if self._run is not None:
            self._run.expired = True
            self._run.memo.clear()
        self._run = None
        self.panels = []

    def reset(self) -> None:
        self._discard_run()
        self.last_error = None
        self._set_state(AppState.INPUT)

# ------------------ CLI -------------------------


def write_outputs(orchestrator: Orchestrator, out_root: Path) -> Path:
    config = orchestrator.config
    ensure_dir(out_root)
    manifest_panels = []
    for p in orchestrator.panels:
        entry = {"id": p.id, "scene": p.scene.model_dump(), "error": p.error, "file": None,
                 "is_fallback": bool(p.image and p.image.is_fallback)}
        if p.image is not None:
            ext = p.image.mime_type.split("/")[-1].replace("jpeg", "jpg")
            fname = f"panel-{p.id:02d}.{ext}"
            (out_root / fname).write_bytes(p.image.data)
            entry["file"] = fname
        manifest_panels.append(entry)

    grid = create_storyboard_grid(orchestrator.panels, config.aspect_ratio, config.show_captions)
    grid_path = out_root / "storyboard.png"
    grid.save(grid_path, "PNG")

    manifest = {
        "meta": {"run": orchestrator.run_id, "style": config.style, "aspect_ratio": config.aspect_ratio, "model": config.model,
                 "backend": config.backend},
        "story": config.story_text,
        "panels": manifest_panels,
    }
    (out_root / "manifest.json").write_text(json.dumps(manifest, indent=2), encoding="utf-8")
    return grid_path


async def run_pipeline(config: StoryConfig, out_root: Path) -> Path:
    ensure_dir(out_root)
    orchestrator = Orchestrator(log_dir=out_root)
    await orchestrator.start(config, out_root.name)
    grid_path = write_outputs(orchestrator, out_root)
    failed = [p.id for p in orchestrator.panels if p.error]
    if failed:
        print(f"   ! Failed panels: {failed}")
    print(f">> Output at: {out_root}")
    print(f">> Storyboard: {grid_path}")
    return grid_path


def main(argv: Optional[List[str]] = None) -> int:
    parser = argparse.ArgumentParser(description="Generate a 3x3 storyboard from a story and a character image.")
    parser.add_argument("story", type=Path, help="Text file with the story outline")
    parser.add_argument("reference", type=Path, help="Character reference image")
    parser.add_argument("--style", default=STYLES[0])
    parser.add_argument("--aspect", default="16:9", choices=sorted(ASPECT_RATIOS))
    parser.add_argument("--model", default=DEFAULT_IMAGE_MODEL)
    parser.add_argument("--backend", default=IMAGE_BACKEND)
    parser.add_argument("--no-captions", action="store_true")
    parser.add_argument("--out", type=Path, default=Path("output"))
    args = parser.parse_args(argv)

    config = StoryConfig(
        story_text=args.story.read_text(encoding="utf-8"),
        aspect_ratio=args.aspect,
        style=args.style,
        show_captions=not args.no_captions,
        reference_image=args.reference.read_bytes(),
        model=args.model,
        backend=args.backend,
    )
    out_dir = args.out / f"{slugify(args.story.stem, 'story')}-{uuid.uuid4().hex[:6]}"
    try:
        asyncio.run(run_pipeline(config, out_dir))
    except ConfigurationFailure as e:
        print(f"Configuration error: {e}")
        return 2
    except Exception as e:
        print(f"Simulation Failed: {e}")
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
