"""
Vercel entry point for the Campus Ticket Escalation API
"""
import sys
import os

# Add parent directory to path
parent_dir = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
if parent_dir not in sys.path:
    sys.path.insert(0, parent_dir)

# Set environment variables for serverless
os.environ.setdefault("ENVIRONMENT", "production")
os.environ.setdefault("ESCALATION_POLICY_PATH", os.path.join(parent_dir, "escalation_policy.yaml"))
os.environ.setdefault("SWEEP_INTERVAL_SECONDS", "0")  # The platform cron calls /cron/escalate-tickets

from mangum import Mangum
from src.main import app

# Lambda handler for ASGI app; lifespan wires the services on cold start
handler = Mangum(app, lifespan="auto")
