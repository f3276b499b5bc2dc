"""
AWS Lambda handler for ESS Automation

Triggered by an EventBridge schedule (every minute) to run one automation cycle
for every initialized user. Users with an open session run their own timer; the
shared last-check throttle keeps the two from double-executing.
"""

import asyncio
import json
import logging
import os
from datetime import datetime

# Configure logging for CloudWatch - let CloudWatch handle timestamps
logger = logging.getLogger()
logger.setLevel(logging.INFO)

# Remove default handlers
for handler in logger.handlers:
    logger.removeHandler(handler)

handler = logging.StreamHandler()
formatter = logging.Formatter('%(levelname)s %(message)s')
handler.setFormatter(formatter)
logger.addHandler(handler)

# Suppress noisy loggers
logging.getLogger('aiohttp').setLevel(logging.WARNING)
logging.getLogger('asyncio').setLevel(logging.WARNING)


async def run_automation(config_path: str, user_id: str = None, dry_run: bool = False) -> dict:
    """
    Async runner - must be called within the event loop so aiohttp can
    create its sessions properly.
    """
    from ess_automation.config import Config
    from ess_automation.runner import build_orchestrator, run_all_users

    orchestrator = build_orchestrator(Config(config_path))

    try:
        if user_id:
            results = [await orchestrator.run_cycle(user_id, dry_run=dry_run)]
        else:
            results = await run_all_users(orchestrator, dry_run=dry_run)

        errors = [r for r in results if r.error]
        return {
            'success': not errors,
            'timestamp': datetime.now().isoformat(),
            'users': len(results),
            'triggered': sum(1 for r in results if r.triggered),
            'results': [{'user_id': r.user_id, 'outcome': r.outcome, 'rule': r.matched_rule, 'error': r.error}
                        for r in results],
        }
    finally:
        await orchestrator.close()


def lambda_handler(event, context):
    """
    AWS Lambda entry point for the automation sweep.

    Event parameters (all optional):
    - config_path: Override config file path (default: 'config.yaml')
    - user_id: Run a single user instead of every initialized user
    - dry_run: Evaluate without writing to devices or saving state

    Environment variables (required):
    - FOXESS_TOKEN: FoxESS Cloud API token
    """
    event = event or {}
    logger.info(f"Lambda invoked with event: {json.dumps(event)}")

    # Parse event parameters
    config_path = event.get('config_path', 'config.yaml')

    # Validate required environment variables
    required_env = ['FOXESS_TOKEN']
    missing = [var for var in required_env if not os.environ.get(var)]
    if missing:
        error_msg = f"Missing required environment variables: {missing}"
        logger.error(error_msg)
        return {
            'statusCode': 400,
            'body': json.dumps({'success': False, 'error': error_msg})
        }

    try:
        result = asyncio.run(run_automation(config_path, event.get('user_id'), bool(event.get('dry_run', False))))

        response = {
            'statusCode': 200 if result['success'] else 500,
            'body': json.dumps(result)
        }
        logger.info(f"Lambda completed: {response}")
        return response

    except Exception as e:
        logger.exception(f"Lambda execution failed: {e}")
        return {
            'statusCode': 500,
            'body': json.dumps({
                'success': False,
                'error': str(e),
                'error_type': type(e).__name__
            })
        }


# For local testing
if __name__ == "__main__":
    test_event = {}
    result = lambda_handler(test_event, None)
    print(json.dumps(result, indent=2))
