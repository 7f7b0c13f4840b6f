"""
web/server.py: Relational Chain web runner.

Hosts one ProgressionStateMachine per browser session and exposes its event
surface over Socket.IO. The browser only ever sees the read-only projection
(no target cell); all hit-testing happens here.

Usage:
    python web/server.py                                        # from project root
    python -m web.server                                        # module style
    PORT=3000 python web/server.py                              # custom port
    SAVE_DIR=/data/saves python web/server.py                   # persistent saves
    gunicorn --worker-class eventlet -w 1 web.server:app        # production
"""

# ---------------------------------------------------------------------------
# Eventlet monkey-patching: MUST happen before any other imports.
# When running under gunicorn with --worker-class eventlet, the worker does
# its own patching, but importing eventlet early ensures the stdlib is
# patched before Flask/SocketIO touch it.
# ---------------------------------------------------------------------------
try:
    import eventlet
    eventlet.monkey_patch()
except ImportError:
    pass  # eventlet not installed, fall back to threading mode

import logging
import os
import random
import sys
import threading
import time
import uuid
from pathlib import Path

import numpy as np
from flask import Flask, jsonify, request
from flask_socketio import SocketIO, emit, join_room
from werkzeug.utils import secure_filename

# ---------------------------------------------------------------------------
# Project root, one level up from web/
# ---------------------------------------------------------------------------
PROJECT_ROOT = Path(__file__).resolve().parent.parent
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

from relational_chain.generator import GRID_SIZE, LevelGenerator
from relational_chain.persistence import JsonFileStore, PersistenceGateway
from relational_chain.progression import TICK_INTERVAL, ProgressionStateMachine

# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s [%(levelname)s] %(message)s",
)
logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Flask + SocketIO
# ---------------------------------------------------------------------------
app = Flask(__name__)
app.config["SECRET_KEY"] = os.environ.get("SECRET_KEY", "relational-chain-dev-key")

CORS_ORIGINS = os.environ.get("CORS_ORIGINS", "*")

# Determine async mode: prefer eventlet (required for gunicorn production),
# fall back to threading for local dev.
_async_mode = "eventlet" if "eventlet" in sys.modules else "threading"
logger.info(f"SocketIO async_mode: {_async_mode}")

socketio = SocketIO(
    app,
    cors_allowed_origins=CORS_ORIGINS,
    async_mode=_async_mode,
    ping_timeout=60,
    ping_interval=25,
    max_http_buffer_size=1_000_000,
)

# ---------------------------------------------------------------------------
# Save files: one JSON store per player name
# ---------------------------------------------------------------------------
SAVE_DIR = os.environ.get("SAVE_DIR", str(PROJECT_ROOT / "saves"))

# ---------------------------------------------------------------------------
# Board grid (ARC palette indices, the client maps them to colours)
# ---------------------------------------------------------------------------
EMPTY = 0
ANCHOR = 9          # blue
HIT = 14            # green
MISS = 8            # red


def board_grid(view: dict) -> list[list[int]]:
    """Cell colours for the visible board: anchor and last selection only."""
    grid = np.full((GRID_SIZE, GRID_SIZE), EMPTY, dtype=np.int8)
    puzzle = view.get("puzzle")
    if puzzle and puzzle["anchor"] is not None:
        ax, ay = puzzle["anchor"]
        grid[ay, ax] = ANCHOR
    feedback = view.get("feedback")
    if feedback and 0 <= feedback["x"] < GRID_SIZE and 0 <= feedback["y"] < GRID_SIZE:
        grid[feedback["y"], feedback["x"]] = HIT if feedback["type"] == "success" else MISS
    return grid.tolist()


# ---------------------------------------------------------------------------
# Session management
# ---------------------------------------------------------------------------
game_sessions: dict[str, dict] = {}
SESSION_TIMEOUT = 3600  # 1 hour


def _save_path(player_name: str) -> Path:
    name = secure_filename(player_name) or "anonymous"
    return Path(SAVE_DIR) / f"{name}.json"


def create_session(player_name: str = "Anonymous", seed=None) -> dict:
    """Create a session with its own machine, loading the player's save."""
    session_id = str(uuid.uuid4())[:8]

    gateway = PersistenceGateway(JsonFileStore(_save_path(player_name)))
    machine = ProgressionStateMachine(
        generator=LevelGenerator(random.Random(seed)),
        gateway=gateway,
        now=time.monotonic(),
    )

    session = {
        "id": session_id,
        "machine": machine,
        "player_name": player_name,
        "seed": seed,
        "created_at": time.time(),
        "last_active": time.time(),
        "revision": machine.revision,
        # Serializes the tick loop and socket handlers on this machine.
        "lock": threading.Lock(),
    }
    game_sessions[session_id] = session
    logger.info(f"Session {session_id} created for {player_name} seed={seed}")
    return session


def get_session_state(session: dict) -> dict:
    """Serialize session state for the client."""
    view = session["machine"].view()
    return {
        "session_id": session["id"],
        "player_name": session["player_name"],
        "seed": session["seed"],
        "state": view,
        "grid": board_grid(view),
        "grid_size": GRID_SIZE,
    }


def cleanup_stale_sessions():
    """Remove sessions older than SESSION_TIMEOUT."""
    now = time.time()
    stale = [sid for sid, s in game_sessions.items()
             if now - s["last_active"] > SESSION_TIMEOUT]
    for sid in stale:
        del game_sessions[sid]
        logger.info(f"Cleaned up stale session {sid}")


def advance_session(session: dict) -> bool:
    """Bring the machine up to wall time. True if its state moved."""
    machine = session["machine"]
    machine.advance_to(time.monotonic())
    changed = machine.revision != session["revision"]
    session["revision"] = machine.revision
    return changed


def tick_loop():
    """Background task: run countdowns and deferred transitions."""
    while True:
        socketio.sleep(TICK_INTERVAL)
        for session in list(game_sessions.values()):
            try:
                with session["lock"]:
                    state = get_session_state(session) if advance_session(session) else None
                if state is not None:
                    socketio.emit("frame_update", state, to=session["id"])
            except Exception as e:
                logger.error(f"Tick failed for session {session['id']}: {e}", exc_info=True)


_tick_lock = threading.Lock()
_tick_started = False


def ensure_tick_loop():
    """Start tick_loop once per process, whether run via main() or gunicorn."""
    global _tick_started
    with _tick_lock:
        if _tick_started:
            return
        _tick_started = True
    socketio.start_background_task(tick_loop)
    logger.info("Tick loop started")


# ---------------------------------------------------------------------------
# Event mapping  (socket event name → machine call)
# ---------------------------------------------------------------------------
EVENT_MAP = {
    "start":           lambda m, data: m.start(),
    "stop":            lambda m, data: m.stop(),
    "resume":          lambda m, data: m.resume(),
    "menu":            lambda m, data: m.menu(),
    "show_analytics":  lambda m, data: m.show_analytics(),
    "toggle_practice": lambda m, data: m.toggle_practice(),
    "reset_progress":  lambda m, data: m.reset_progress(),
    "set_level":       lambda m, data: m.set_level(data.get("level")),
    "cell_selected":   lambda m, data: m.cell_selected(int(data["x"]), int(data["y"])),
}


# ═══════════════════════════════════════════════════════════════════════════
#  HTTP ROUTES
# ═══════════════════════════════════════════════════════════════════════════

@app.route("/health")
def health():
    return jsonify({
        "status": "healthy",
        "sessions": len(game_sessions),
    }), 200


@app.route("/api/sessions")
def api_sessions():
    """List active sessions (debug / admin)."""
    cleanup_stale_sessions()
    out = []
    for sid, s in game_sessions.items():
        state = s["machine"].state
        out.append({
            "id": sid,
            "player_name": s["player_name"],
            "status": state.status.value,
            "level": state.level,
            "score": state.score,
            "practice_mode": state.practice_mode,
            "created_at": s["created_at"],
            "last_active": s["last_active"],
        })
    return jsonify({"sessions": out})


@app.route("/api/sessions/<session_id>/analytics")
def api_analytics(session_id):
    session = game_sessions.get(session_id)
    if not session:
        return jsonify({"error": "Session not found"}), 404
    with session["lock"]:
        summary = session["machine"].analytics_summary()
    return jsonify(summary)


# ═══════════════════════════════════════════════════════════════════════════
#  WEBSOCKET EVENTS
# ═══════════════════════════════════════════════════════════════════════════

@socketio.on("connect")
def on_connect():
    logger.info(f"Client connected: {request.sid}")
    ensure_tick_loop()


@socketio.on("disconnect")
def on_disconnect():
    logger.info(f"Client disconnected: {request.sid}")


@socketio.on("create_game")
def on_create_game(data=None):
    """Create a new session, optionally jumping to a starting level."""
    data = data or {}
    try:
        player_name = data.get("player_name", "Anonymous")
        seed = data.get("seed")
        if seed is not None:
            seed = int(seed)

        cleanup_stale_sessions()

        session = create_session(player_name=player_name, seed=seed)
        session["socket_sid"] = request.sid
        join_room(session["id"])

        with session["lock"]:
            if "level" in data:
                session["machine"].set_level(data["level"])
            state = get_session_state(session)
        emit("game_created", state)
        emit("frame_update", state)

    except Exception as e:
        logger.error(f"Error creating game: {e}", exc_info=True)
        emit("error", {"message": str(e)})


@socketio.on("join_game")
def on_join_game(data=None):
    """Rejoin an existing session (e.g. after page refresh)."""
    data = data or {}
    try:
        session_id = data.get("session_id")
        session = game_sessions.get(session_id)
        if not session:
            emit("error", {"message": "Session not found. Create a new game."})
            return

        session["socket_sid"] = request.sid
        join_room(session_id)
        with session["lock"]:
            advance_session(session)
            state = get_session_state(session)
        emit("game_joined", state)
        emit("frame_update", state)

    except Exception as e:
        logger.error(f"Error joining: {e}", exc_info=True)
        emit("error", {"message": str(e)})


def _make_handler(event_name, call):
    def handler(data=None):
        data = data or {}
        try:
            session = game_sessions.get(data.get("session_id"))
            if not session:
                emit("error", {"message": "Session not found"})
                return

            with session["lock"]:
                # Catch up on elapsed time before applying the event.
                advance_session(session)
                call(session["machine"], data)
                session["revision"] = session["machine"].revision
                session["last_active"] = time.time()
                state = get_session_state(session)

            emit("frame_update", state)

        except (KeyError, TypeError, ValueError) as e:
            emit("error", {"message": f"Bad {event_name} payload: {e}"})
        except Exception as e:
            logger.error(f"Error in {event_name}: {e}", exc_info=True)
            emit("error", {"message": str(e)})

    handler.__name__ = f"on_{event_name}"
    return handler


for _event_name, _call in EVENT_MAP.items():
    socketio.on_event(_event_name, _make_handler(_event_name, _call))


# ═══════════════════════════════════════════════════════════════════════════
#  ENTRYPOINT
# ═══════════════════════════════════════════════════════════════════════════

def main():
    host = os.environ.get("HOST", "0.0.0.0")
    port = int(os.environ.get("PORT", 8080))
    debug = os.environ.get("FLASK_DEBUG", "0") == "1"

    logger.info(f"Relational Chain web runner starting on {host}:{port}")
    logger.info(f"Save dir: {SAVE_DIR}")
    logger.info(f"Debug: {debug}")

    ensure_tick_loop()
    socketio.run(app, host=host, port=port, debug=debug, allow_unsafe_werkzeug=True)


if __name__ == "__main__":
    main()
