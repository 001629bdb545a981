#!/usr/bin/env python3
"""
Quick runner for the Disciplinary Case Service
==============================================

Usage:
    python -m discipline_lite.run
"""

import uvicorn

if __name__ == "__main__":
    print("Starting Disciplinary Case Service...")
    print("API docs: http://localhost:8000/docs")
    print("Health:   http://localhost:8000/health")
    print()

    uvicorn.run(
        "discipline_lite.api:app",
        host="0.0.0.0",
        port=8000,
        reload=True
    )
