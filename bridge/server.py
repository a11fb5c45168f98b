"""
FastAPI server for the simulator-MPC communication bridge.
Receives telemetry, runs one MPC tick per message and sends actuation back.
"""

import asyncio
import time
import logging
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Optional

from fastapi import FastAPI, WebSocket, WebSocketDisconnect
from fastapi.concurrency import run_in_threadpool
from fastapi.middleware.cors import CORSMiddleware
import uvicorn

from bridge.protocol import (
    MANUAL_FRAME,
    FrameError,
    SteerCommand,
    TelemetryMessage,
    encode_event,
    is_event_frame,
    parse_event,
)
from control.mpc_config import MPCConfig
from data.recorder import TickRecorder
from mpc_stack import MPCStack, Telemetry, TelemetryError

# Log slow ticks to identify simulator<->Python stalls.
SLOW_TICK_SECONDS = 0.2


def _get_bridge_logger() -> logging.Logger:
    log_path = Path(__file__).resolve().parents[1] / "tmp" / "logs" / "mpc_bridge.log"
    log_path.parent.mkdir(parents=True, exist_ok=True)

    bridge_logger = logging.getLogger("mpc_bridge")
    bridge_logger.setLevel(logging.INFO)

    if not any(isinstance(h, logging.FileHandler) and h.baseFilename == str(log_path)
               for h in bridge_logger.handlers):
        handler = logging.FileHandler(log_path, mode="a", encoding="utf-8")
        formatter = logging.Formatter("%(asctime)s %(levelname)s %(message)s")
        handler.setFormatter(formatter)
        bridge_logger.addHandler(handler)
        bridge_logger.propagate = False

    return bridge_logger


logger = _get_bridge_logger()


async def _handle_frame(app: FastAPI, stack: MPCStack, frame: str) -> Optional[str]:
    """
    Process one websocket frame.

    Returns:
        Response frame, or None when nothing should be sent
    """
    if not is_event_frame(frame):
        return None
    try:
        parsed = parse_event(frame)
    except FrameError as e:
        logger.warning("Ignoring malformed frame: %s", e)
        return None
    if parsed is None:
        return MANUAL_FRAME

    event, data = parsed
    if event != "telemetry":
        logger.info("Ignoring event %r", event)
        return None

    start_time = time.time()
    try:
        message = await run_in_threadpool(stack.process_message, data)
    except TelemetryError as e:
        logger.warning("Ignoring malformed telemetry: %s", e)
        return None
    duration = time.time() - start_time
    if duration > SLOW_TICK_SECONDS:
        logger.warning("[SLOW] telemetry tick duration=%.3fs tick=%d", duration, stack.tick_count)

    app.state.latest_trajectory = {**message, "timestamp": time.time()}
    app.state.tick_count += 1
    return encode_event("steer", message)


def create_app(config: Optional[MPCConfig] = None, simulate_latency: bool = True,
               recording_dir: Optional[str] = None) -> FastAPI:
    """
    Build the bridge application.

    Args:
        config: Controller configuration shared by every connection
        simulate_latency: Sleep for config.latency_s before each websocket
            response, mimicking actuation delay in a real car
        recording_dir: Record ticks to HDF5 in this directory if set
    """
    config = config or MPCConfig()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        yield
        if app.state.recorder is not None:
            app.state.recorder.close()

    app = FastAPI(title="MPC Stack Bridge Server", lifespan=lifespan)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.state.config = config
    app.state.recorder = (
        TickRecorder(recording_dir, horizon=config.horizon.N) if recording_dir else None
    )
    app.state.latest_trajectory = None
    app.state.tick_count = 0
    # HTTP clients share one pipeline; ticks on it are serialized by the lock.
    app.state.http_stack = MPCStack(config, recorder=app.state.recorder)
    app.state.http_lock = asyncio.Lock()

    async def serve_simulator(websocket: WebSocket):
        await websocket.accept()
        # Each connection owns its pipeline and fallback state.
        stack = MPCStack(config, recorder=app.state.recorder)
        logger.info("Simulator connected: %s", websocket.client)
        try:
            while True:
                frame = await websocket.receive_text()
                response = await _handle_frame(app, stack, frame)
                if response is None:
                    continue
                if simulate_latency and response != MANUAL_FRAME:
                    await asyncio.sleep(config.latency_s)
                await websocket.send_text(response)
        except WebSocketDisconnect:
            logger.info("Simulator disconnected after %d ticks", stack.tick_count)

    app.add_api_websocket_route("/", serve_simulator)
    app.add_api_websocket_route("/socket.io/", serve_simulator)

    @app.post("/api/telemetry", response_model=SteerCommand)
    async def receive_telemetry(telemetry: TelemetryMessage):
        """
        Run one control tick for a telemetry sample.

        Args:
            telemetry: Simulator telemetry (world frame)
        """
        sample = Telemetry(**telemetry.model_dump())
        async with app.state.http_lock:
            result = await run_in_threadpool(app.state.http_stack.process_telemetry, sample)
        message = result.to_message()
        app.state.latest_trajectory = {**message, "timestamp": time.time()}
        app.state.tick_count += 1
        return SteerCommand(**message)

    @app.get("/api/trajectory")
    async def get_trajectory_data():
        """
        Get latest predicted and reference trajectory for visualization.
        """
        if app.state.latest_trajectory is None:
            return {
                "mpc_x": [],
                "mpc_y": [],
                "next_x": [],
                "next_y": [],
                "timestamp": time.time()
            }
        return app.state.latest_trajectory

    @app.get("/api/health")
    async def health_check():
        """Health check endpoint."""
        return {
            "status": "healthy",
            "timestamp": time.time(),
            "ticks": app.state.tick_count,
            "horizon": {
                "N": config.horizon.N,
                "dt": config.horizon.dt,
                "Lf": config.horizon.Lf,
                "ref_v": config.horizon.ref_v,
            },
            "recording": app.state.recorder is not None,
        }

    return app


def run_server(app: Optional[FastAPI] = None, host: str = "0.0.0.0", port: int = 4567):
    """Run the bridge server."""
    app = app or create_app()
    logger.info("Starting MPC Stack Bridge Server on %s:%d", host, port)
    print(f"Starting MPC Stack Bridge Server on {host}:{port}")
    print("Endpoints:")
    print("  WS   /              - Simulator telemetry/steer frames")
    print("  POST /api/telemetry - Run one tick for a JSON telemetry sample")
    print("  GET  /api/trajectory - Latest predicted trajectory")
    print("  GET  /api/health    - Health check")

    uvicorn.run(app, host=host, port=port)


if __name__ == "__main__":
    run_server()
