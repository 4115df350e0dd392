"""Entry point for python -m llm_wtg."""

from .cli import main

if __name__ == "__main__":
    main()
