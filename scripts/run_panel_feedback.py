#!/usr/bin/env python3
import os
import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))

print(
    f"[panel-feedback] registry={os.environ.get('PANEL_FEEDBACK_DIR', '~/.panel-feedback')} | "
    f"workspace={os.environ.get('PANEL_FEEDBACK_WORKSPACE', os.getcwd())} | "
    f"session={os.environ.get('VSCODE_PID', '-')}",
    file=sys.stderr,
)

from mcp_servers.panel_feedback.host import main  # noqa: E402

if __name__ == "__main__":
    main()
