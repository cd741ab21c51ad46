"""
billing/usage_routes.py

Flask Blueprints for usage reporting and metered image generation.

Endpoints:
    Usage (login required):
        GET  /api/usage/summary - Totals, balance, Pro status, last 100 records
        GET  /api/usage/logs?page=1&limit=20 - Paginated usage records
        GET  /api/usage/stats?period=day|week|month - Totals by family + daily series

    Generation (login required):
        POST /api/generate - Start an image job (needs CREDITS_PER_IMAGE)
        GET  /api/generate/status?taskId=... - Poll a job; charges on first success

The status endpoint is both a query and a billing trigger: clients poll it
repeatedly, and only the first poll that observes success is charged.

Version History:
    2026-01-09: Initial implementation
"""

import re
import logging

from flask import Blueprint, request, jsonify
from flask_login import login_required, current_user

from billing.meter import usage_meter
from billing.models import UsageAction
from billing.config import CREDITS_PER_IMAGE
from billing.decorators import requires_credits
from billing.errors import ValidationError, UpstreamError
from billing.jobs import GenerationRequest, get_generation_client
from billing.routes import get_json_object
from billing.audit import client_ip


logger = logging.getLogger(__name__)

usage_bp = Blueprint('usage_bp', __name__, url_prefix='/api/usage')
generate_bp = Blueprint('generate_bp', __name__, url_prefix='/api/generate')

TASK_ID_PATTERN = re.compile(r'[A-Za-z0-9_-]{1,100}')

PROMPT_EXCERPT_LENGTH = 200


def _request_metadata() -> dict:
    return {
        'ip': client_ip(),
        'user_agent': (request.headers.get('User-Agent') or '')[:200] or None,
    }


# =============================================================================
# USAGE REPORTS
# =============================================================================

@usage_bp.route('/summary', methods=['GET'])
@login_required
def summary():
    return jsonify({
        'success': True,
        **usage_meter.get_usage_summary(current_user.id)
    })


@usage_bp.route('/logs', methods=['GET'])
@login_required
def logs():
    """
    Paginated usage records, newest first.

    Query params:
        - page: 1-based page (default 1)
        - limit: Page size, clamped to 1..100 (default 20)
    """
    page = request.args.get('page', 1, type=int)
    limit = request.args.get('limit', 20, type=int)

    return jsonify({
        'success': True,
        **usage_meter.get_usage_logs(current_user.id, page=page, limit=limit)
    })


@usage_bp.route('/stats', methods=['GET'])
@login_required
def stats():
    period = request.args.get('period', 'week')
    return jsonify({
        'success': True,
        **usage_meter.get_usage_stats(current_user.id, period=period)
    })


# =============================================================================
# IMAGE GENERATION
# =============================================================================

@generate_bp.route('', methods=['POST'])
@login_required
@requires_credits(CREDITS_PER_IMAGE)
def create_task():
    """
    Start an image generation job.

    Request:
        {
            "prompt": "a lighthouse at dusk",
            "aspect_ratio": "16:9",       # optional, default 1:1
            "resolution": "2K",           # optional, default 1K
            "output_format": "png",       # optional
            "image_input": ["https://..."]  # optional reference images
        }

    Response:
        {"success": true, "taskId": "...", "message": "Task created successfully"}

    Nothing is charged here; see /status.
    """
    data = get_json_object()
    generation = GenerationRequest.from_payload(data)

    if not generation.prompt:
        raise ValidationError('Prompt is required')

    try:
        task_id = get_generation_client().create_task(generation)
    except UpstreamError as e:
        usage_meter.record_failure(
            current_user.id,
            UsageAction.GENERATE_IMAGE,
            metadata={
                'prompt': generation.prompt[:PROMPT_EXCERPT_LENGTH],
                'aspect_ratio': generation.aspect_ratio,
                'resolution': generation.resolution,
                'error': e.message,
                **_request_metadata(),
            },
        )
        raise

    logger.info(f"Image task {task_id} created for user {current_user.id}")

    return jsonify({
        'success': True,
        'taskId': task_id,
        'message': 'Task created successfully'
    })


@generate_bp.route('/status', methods=['GET'])
@login_required
def task_status():
    """
    Poll an image job.

    Query params:
        - taskId: Job id returned by POST /api/generate
        - prompt, aspect_ratio, resolution: optional, kept on the usage record

    Response:
        {
            "success": true,
            "taskId": "...",
            "status": "processing" | "completed" | "failed",
            "output": {"media_url": "..."} | null,
            "error": "..." | null,
            "charged": true | false
        }
    """
    task_id = request.args.get('taskId')
    if not task_id:
        raise ValidationError('taskId is required')
    if not TASK_ID_PATTERN.fullmatch(task_id):
        raise ValidationError('Invalid taskId format')

    status = get_generation_client().get_task_status(task_id)

    metadata = {
        'image_url': status.media_url,
        'error': status.error,
        'prompt': (request.args.get('prompt') or '')[:PROMPT_EXCERPT_LENGTH] or None,
        'aspect_ratio': request.args.get('aspect_ratio'),
        'resolution': request.args.get('resolution'),
        **_request_metadata(),
    }

    outcome = usage_meter.charge_async_on_first_observed_outcome(
        user_id=current_user.id,
        action=UsageAction.GENERATE_IMAGE,
        external_job_id=task_id,
        outcome=status.state,
        metadata={k: v for k, v in metadata.items() if v is not None},
    )

    return jsonify({
        'success': True,
        'taskId': task_id,
        'status': status.state.value,
        'output': status.output,
        'error': status.error,
        'charged': outcome.charged,
    })
