#!/usr/bin/env python3
"""
CareAssist API Startup Script

Starts the CareAssist FastAPI server for local development.
"""

import sys
from pathlib import Path

import uvicorn


def main():
    """Start the CareAssist API server."""
    print("🚀 Starting CareAssist API Server...")
    print("💬 Features:")
    print("   ✅ Widget conversations and polling")
    print("   ✅ Agent handoff and AI reply queue")
    print("   ✅ Lead extraction")
    print("   ✅ Salesforce export")
    print("   ✅ Email / Slack notifications")
    print("")
    print("📖 Documentation will be available at:")
    print("   🌐 Swagger UI:  http://localhost:8000/docs")
    print("   📚 ReDoc:       http://localhost:8000/redoc")
    print("")

    env_file = Path(".env")
    if not env_file.exists():
        print("⚠️  WARNING: No .env file found!")
        print("   Create one with `python generate_keys.py`, then set:")
        print("   DATABASE_URL=postgresql://...")
        print("")

    try:
        uvicorn.run(
            "careassist.main:app",
            host="0.0.0.0",
            port=8000,
            reload=True,
            reload_dirs=["careassist"],
            log_level="info"
        )
    except KeyboardInterrupt:
        print("\n👋 Shutting down CareAssist API server...")
    except Exception as e:
        print(f"❌ Error starting server: {e}")
        sys.exit(1)


if __name__ == "__main__":
    main()
