"""Vercel serverless entry point: wraps the FastAPI app for deployment."""
from pathlib import Path
import sys

# Ensure project root is on path
project_root = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(project_root))

from opsinbox.config import load_config
from opsinbox.utils import setup_logging
from opsinbox.web import create_app

cfg = load_config()
setup_logging(cfg.log_level)
app = create_app(cfg)
