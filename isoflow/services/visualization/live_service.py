"""
Interactive viewer for an analysis context.

The context is pickled into the workspace and ``isoflow/streamlit_app.py``
is started with ``streamlit run`` in a subprocess, so the caller's session
is not blocked. Streamlit ships with the ``live`` extra.
"""

import importlib.util
import pickle
import subprocess
import sys
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, Optional, Tuple, Union

from isoflow.config.settings import get_settings
from isoflow.core import LiveViewerError
from isoflow.core.analysis_ir import AnalysisStep
from isoflow.core.context import AnalysisContext
from isoflow.utils.logger import get_logger

logger = get_logger(__name__)

STREAMLIT_APP = Path(__file__).resolve().parents[2] / "streamlit_app.py"


def load_snapshot(path: Union[str, Path]) -> AnalysisContext:
    """Load a context pickled by :meth:`LiveViewerService.snapshot`."""
    path = Path(path)
    if not path.exists():
        raise LiveViewerError(
            f"Context snapshot not found: {path}", details={"path": str(path)}
        )
    with open(path, "rb") as f:
        context = pickle.load(f)
    if not isinstance(context, AnalysisContext):
        raise LiveViewerError(
            f"{path} does not contain an analysis context",
            details={"path": str(path), "type": type(context).__name__},
        )
    return context


class LiveViewerService:
    """Launches the Streamlit viewer for a context."""

    def __init__(self, workspace: Optional[Union[str, Path]] = None):
        settings = get_settings()
        self.workspace = Path(workspace) if workspace else settings.WORKSPACE
        self.default_port = settings.LIVE_PORT

    def snapshot(self, context: AnalysisContext) -> Path:
        """Pickle ``context`` under ``<workspace>/live`` and return the file."""
        live_dir = self.workspace / "live"
        live_dir.mkdir(parents=True, exist_ok=True)
        timestamp = datetime.now().strftime("%Y%m%d_%H%M%S_%f")
        path = live_dir / f"context_{timestamp}.pkl"
        with open(path, "wb") as f:
            pickle.dump(context, f, protocol=pickle.HIGHEST_PROTOCOL)
        logger.debug(f"Context snapshot written to {path}")
        return path

    def launch(
        self, context: AnalysisContext, port: Optional[int] = None
    ) -> Tuple[subprocess.Popen, Dict[str, Any], AnalysisStep]:
        """
        Start the viewer on ``port`` (default from settings).

        Returns:
            Tuple[subprocess.Popen, Dict[str, Any], AnalysisStep]: the running
                Streamlit process, launch details and provenance step

        Raises:
            LiveViewerError: If Streamlit is not installed or fails to start
        """
        if importlib.util.find_spec("streamlit") is None:
            raise LiveViewerError(
                "The live viewer needs Streamlit. Install it with: "
                "pip install 'isoflow[live]'"
            )

        port = port or self.default_port
        snapshot = self.snapshot(context)
        command = [
            sys.executable,
            "-m",
            "streamlit",
            "run",
            str(STREAMLIT_APP),
            "--server.port",
            str(port),
            "--server.headless",
            "true",
            "--",
            str(snapshot),
        ]
        logger.info(f"Starting live viewer on http://localhost:{port}")
        try:
            process = subprocess.Popen(command)
        except OSError as e:
            raise LiveViewerError(
                f"Could not start Streamlit: {e}",
                details={"command": command},
            ) from e

        stats = {
            "port": port,
            "url": f"http://localhost:{port}",
            "snapshot": str(snapshot),
            "pid": process.pid,
        }
        ir = AnalysisStep(
            operation="isoflow.live",
            tool_name="live",
            description=f"Launch the live viewer on port {port}",
            library="streamlit",
            code_template="viewer = live(ctx, port={{ port }})",
            imports=["from isoflow.api import live"],
            parameters={"port": port},
            input_entities=["ctx"],
            output_entities=["viewer"],
        )
        return process, stats, ir
