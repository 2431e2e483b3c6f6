import os
import io
import json
import time
import queue
import asyncio
import threading
import concurrent.futures
from pathlib import Path
from typing import Optional, Dict, Any, Callable, Generator, Tuple

from flask import Flask, request, Response, send_file, jsonify
from dotenv import load_dotenv
from pydantic import ValidationError

from storyboard import (
    ASPECT_RATIOS, GEMINI_MODELS, SHOT_TYPES, STYLES, DEFAULT_IMAGE_MODEL, IMAGE_BACKEND, BACKENDS,
    ConfigurationFailure, StoryConfig, create_storyboard_grid, decode_data_url, pil_to_png_bytes, slugify,
)
from workflow import AppState, Orchestrator

# Load environment variables
load_dotenv()


app = Flask(__name__, static_folder=None)


ROOT = Path(__file__).parent
OUTPUT_DIR = ROOT / "output"


class AsyncRunner:
    """One event loop on a daemon thread; every orchestrator call runs there."""

    def __init__(self):
        self.loop = asyncio.new_event_loop()
        self.thread = threading.Thread(target=self._run, daemon=True)
        self.thread.start()

    def _run(self):
        asyncio.set_event_loop(self.loop)
        self.loop.run_forever()

    def submit(self, coro) -> concurrent.futures.Future:
        return asyncio.run_coroutine_threadsafe(coro, self.loop)

    def call(self, fn, *args, timeout: float = 10):
        async def _call():
            return fn(*args)
        return self.submit(_call()).result(timeout)

    def stop(self):
        self.loop.call_soon_threadsafe(self.loop.stop)
        self.thread.join(timeout=1)


class RunState:
    def __init__(self, orchestrator: Optional[Orchestrator] = None):
        self.runner = AsyncRunner()
        self.orchestrator = orchestrator or Orchestrator(log_dir=OUTPUT_DIR)
        self.future: Optional[concurrent.futures.Future] = None

    def open_stream(self) -> Tuple["queue.Queue[Dict[str, Any]]", Callable[[], None]]:
        """A fresh queue fed with the current snapshot and every later one, plus its unsubscribe."""
        def _open():
            events: "queue.Queue[Dict[str, Any]]" = queue.Queue()
            unsubscribe = self.orchestrator.subscribe(events.put)
            events.put(self.orchestrator.snapshot())
            return events, unsubscribe
        return self.runner.call(_open)


state = RunState()


def form_flag(value: Optional[str], default: bool = True) -> bool:
    if value is None:
        return default
    return value.strip().lower() in {"1", "true", "on", "yes"}


def read_reference() -> tuple[Optional[bytes], Optional[str]]:
    file = request.files.get("reference")
    if file is not None and file.filename:
        return file.read(), file.mimetype or None
    data_url = request.form.get("reference_image", "").strip()
    if data_url:
        try:
            return decode_data_url(data_url)
        except ValueError:
            return None, None
    return None, None


def log_run_result(future: concurrent.futures.Future) -> None:
    if future.cancelled():
        return
    error = future.exception()
    if error is not None:
        print(f"   ! Run ended with error: {error}")


@app.route("/")
def index() -> Response:
    html = (ROOT / "web" / "index.html").read_text(encoding="utf-8")
    return Response(html, mimetype="text/html")


@app.route("/api/options")
def api_options():
    return jsonify({
        "styles": STYLES,
        "aspect_ratios": [{"value": k, "label": v} for k, v in ASPECT_RATIOS.items()],
        "models": GEMINI_MODELS,
        "backends": sorted(BACKENDS),
        "shot_types": SHOT_TYPES,
        "defaults": {"model": DEFAULT_IMAGE_MODEL, "backend": IMAGE_BACKEND},
    })


@app.route("/api/start", methods=["POST"])
def api_start():
    reference, reference_mime = read_reference()
    if not reference:
        return jsonify({"error": "Character reference image required"}), 400

    story_text = request.form.get("story", "").strip()
    if not story_text:
        return jsonify({"error": "Story text required"}), 400

    try:
        config = StoryConfig(
            story_text=story_text,
            aspect_ratio=request.form.get("aspect_ratio", "16:9"),
            style=request.form.get("style", STYLES[0]),
            show_captions=form_flag(request.form.get("show_captions")),
            reference_image=reference,
            reference_mime=reference_mime,
            api_key=request.form.get("api_key") or None,
            model=request.form.get("model") or DEFAULT_IMAGE_MODEL,
            backend=request.form.get("backend") or IMAGE_BACKEND,
        )
        state.runner.call(state.orchestrator.check_config, config)
    except ValidationError as e:
        return jsonify({"error": "; ".join(err["msg"] for err in e.errors())}), 400
    except ConfigurationFailure as e:
        return jsonify({"error": str(e)}), 400

    run_id = f"{slugify(story_text.splitlines()[0], 'story')}-{int(time.time())}"
    state.future = state.runner.submit(state.orchestrator.start(config, run_id))
    state.future.add_done_callback(log_run_result)
    # start() reaches PLANNING before its first await
    snapshot = state.runner.call(state.orchestrator.snapshot)
    return jsonify({"run": run_id, "state": snapshot["state"]}), 202


@app.route("/api/state")
def api_state():
    snapshot = state.runner.call(state.orchestrator.snapshot)
    return jsonify(snapshot)


@app.route("/api/stream")
def api_stream() -> Response:
    runner = state.runner
    events, unsubscribe = state.open_stream()

    def gen() -> Generator[str, None, None]:
        try:
            yield "event: ping\n" "data: {}\n\n"
            while True:
                try:
                    evt = events.get(timeout=60)
                except queue.Empty:
                    yield "event: ping\n" "data: {}\n\n"
                    continue
                yield f"data: {json.dumps(evt)}\n\n"
                if evt["state"] == AppState.COMPLETE.value or (evt["state"] == AppState.INPUT.value and evt["error"]):
                    break
        finally:
            runner.call(unsubscribe)
    return Response(gen(), mimetype="text/event-stream")


@app.route("/api/regenerate", methods=["POST"])
def api_regenerate():
    data = request.get_json(force=True, silent=True) or {}
    panel_id = data.get("panel")
    if not isinstance(panel_id, int):
        return jsonify({"error": "Missing panel"}), 400
    if state.runner.call(state.orchestrator.get_panel, panel_id) is None:
        return jsonify({"error": f"Panel {panel_id} not found"}), 404
    if state.runner.call(state.orchestrator.regenerable, panel_id) is None:
        return jsonify({"error": f"Panel {panel_id} is still rendering"}), 409

    state.runner.submit(state.orchestrator.regenerate(panel_id))
    return jsonify({"panel": panel_id}), 202


@app.route("/api/reset", methods=["POST"])
def api_reset():
    state.runner.call(state.orchestrator.reset)
    return jsonify({"state": AppState.INPUT.value})


@app.route("/api/panel/<int:panel_id>")
def api_panel(panel_id: int):
    panel = state.runner.call(state.orchestrator.get_panel, panel_id)
    if panel is None or panel.image is None:
        return "Not found", 404
    return send_file(io.BytesIO(panel.image.data), mimetype=panel.image.mime_type,
                     download_name=f"story-scene-{panel_id}.{panel.image.mime_type.split('/')[-1]}")


@app.route("/api/export")
def api_export():
    def grab():
        return state.orchestrator.config, list(state.orchestrator.panels), state.orchestrator.run_id
    config, panels, run_id = state.runner.call(grab)
    if config is None or not panels:
        return jsonify({"error": "Nothing to export"}), 409

    grid = create_storyboard_grid(panels, config.aspect_ratio, config.show_captions)
    return send_file(io.BytesIO(pil_to_png_bytes(grid)), mimetype="image/png",
                     download_name=f"{run_id}.png")


def main():
    OUTPUT_DIR.mkdir(parents=True, exist_ok=True)
    app.run(host=os.getenv("HOST", "127.0.0.1"), port=int(os.getenv("PORT", "5001")),
            debug=os.getenv("FLASK_DEBUG") == "1", use_reloader=False, threaded=True)


if __name__ == "__main__":
    main()
