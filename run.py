"""
Meeting Copilot - live meeting transcription with AI insights.

Entry point that loads .env and runs the command line.
"""

import sys
from pathlib import Path

from dotenv import load_dotenv

# Run from a source checkout without installing
sys.path.insert(0, str(Path(__file__).parent / "src"))

from meeting_copilot.main import main  # noqa: E402


if __name__ == '__main__':
    load_dotenv(Path(__file__).parent / ".env")
    sys.exit(main())
