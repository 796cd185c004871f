from datetime import datetime, timezone

from flask import request, current_app

from .db import get_supabase


def log_admin_action(action_type: str, target_user_id: str = None, details: dict = None):
    """Record an admin mutation in admin_action_logs; never fails the calling request."""
    admin_id = getattr(request, 'user_id', None)
    try:
        log_entry = {
            'admin_id': admin_id,
            'admin_email': getattr(request, 'user_email', None),
            'action_type': action_type,
            'target_user_id': target_user_id,
            'details': details or {},
            'ip_address': request.headers.get('X-Forwarded-For', request.remote_addr),
            'user_agent': request.headers.get('User-Agent'),
            'created_at': datetime.now(timezone.utc).isoformat(),
        }

        try:
            get_supabase().table('admin_action_logs').insert(log_entry).execute()
        except Exception as e:
            current_app.logger.warning(f"Admin action log insert failed ({e}), logging to app logger: {log_entry}")

        current_app.logger.info(f"ADMIN ACTION: {admin_id} - {action_type} - target: {target_user_id}")
    except Exception as e:
        current_app.logger.error(f"Failed to log admin action: {e}")
