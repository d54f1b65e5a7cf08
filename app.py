"""
=============================================================================
ADAPTIVE LEARNING EMOTION PIPELINE — APPLICATION ENTRY POINT (app.py)
=============================================================================

WHAT THIS FILE DOES (in plain language):
----------------------------------------
This is the "front door" of the server. When you run "python app.py", the
computer starts a web server that the learning pages talk to. The server:

  1. Listens for requests from the browser (e.g. "start emotion detection",
     "what adaptation should this lesson page show right now?").
  2. Runs the emotion pipeline in the background: camera frames go through
     the neural classifier (or the MediaPipe landmark fallback), and each
     mounted lesson page gets a stabilized adaptation (calm theme, hints,
     simplified text) that does not flicker.

The actual "rooms" (URLs) are defined in routes.py; the pipeline itself lives
in services/ and utils/.

HOW TO RUN:
-----------
  - From project root:  python app.py
  - By default the app is at:  http://localhost:5000

CONFIGURATION:
--------------
  - Settings (model URLs, mirrors, ports, etc.) come from the .env file and
    config.py. See config.py for every variable and its default.
=============================================================================
"""

# ---------------------------------------------------------------------------
# Step 1: Load environment variables from .env (before anything else)
# ---------------------------------------------------------------------------
# config.py reads os.environ at import time, so .env must be loaded first.
from pathlib import Path
from dotenv import load_dotenv

load_dotenv(Path(__file__).resolve().parent / ".env")

# ---------------------------------------------------------------------------
# Step 2: Import the web framework and our own modules
# ---------------------------------------------------------------------------
import logging

from flask import Flask
from flask_cors import CORS
from flask_compress import Compress

from routes import register_routes
import config

# ---------------------------------------------------------------------------
# Step 3: Logging and config warnings
# ---------------------------------------------------------------------------
logging.basicConfig(
    level=getattr(logging, config.LOG_LEVEL, logging.INFO),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
config.warn_missing_config()


def create_app() -> Flask:
    """
    Create and configure the Flask application (the web server).

    What it does:
      - Creates a new Flask "app" object.
      - Enables CORS so lesson pages served from another origin can call us.
      - Enables compression for the larger JSON responses (emotion state
        with history).
      - Registers all our URL routes (emotion, surfaces, config, health).

    Returns:
        The configured Flask application.
    """
    app = Flask(__name__)

    # In production you would restrict this to specific domains.
    CORS(app, resources={r"/*": {"origins": "*"}})

    Compress(app)

    register_routes(app)

    return app


# ---------------------------------------------------------------------------
# Create the one global Flask application
# ---------------------------------------------------------------------------
app = create_app()


# ---------------------------------------------------------------------------
# Run the server when this file is executed directly (e.g. "python app.py")
# ---------------------------------------------------------------------------
if __name__ == "__main__":
    # FLASK_DEBUG=true uses Flask's reloading dev server; otherwise Waitress.
    if config.FLASK_DEBUG:
        app.run(
            host=config.FLASK_HOST,
            port=config.FLASK_PORT,
            debug=True
        )
    else:
        import waitress
        waitress.serve(app, host=config.FLASK_HOST, port=config.FLASK_PORT, threads=6)
