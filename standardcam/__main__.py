"""
Main entry point for the standardcam package.
Run with: python -m standardcam
"""
from standardcam.server import main

if __name__ == "__main__":
    main()
