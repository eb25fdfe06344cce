"""Entry point for running replydesk as a module.

Usage:
    python -m replydesk validate-config
    python -m replydesk --help
"""

from dotenv import load_dotenv

load_dotenv()  # Load .env before any other imports that need env vars

from replydesk.cli import main  # noqa: E402

if __name__ == "__main__":
    main()
