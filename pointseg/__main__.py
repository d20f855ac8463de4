"""Entry point for running the pointseg server as a module.

Usage:
    python -m pointseg [OPTIONS]

Options:
    --host HOST         Server host (default: 0.0.0.0)
    --port PORT         Server port (default: 8000)
    --model-id MODEL    SAM checkpoint to load
    --reload            Enable auto-reload for development
    --help              Show all available options
"""

from pointseg.cli import main

if __name__ == "__main__":
    main()
