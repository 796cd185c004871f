"""Support tickets for users and the admin helpdesk."""
import re
from datetime import datetime, timedelta, timezone

from flask import Blueprint, request, jsonify, current_app

from .auth import require_auth, require_admin
from .db import get_supabase, fetch_one, first_row, parse_timestamp
from .extensions import limiter

support_bp = Blueprint('support', __name__)

TICKET_CATEGORIES = (
    'account', 'transaction', 'kyc', 'ban_appeal', 'technical',
    'copy-trading', 'earn-package', 'other',
)
TICKET_STATUSES = ('open', 'pending', 'in_progress', 'resolved', 'closed')
TICKET_PRIORITIES = ('low', 'normal', 'high', 'urgent')
FIRST_TICKET_NUMBER = 1000
TICKET_NUMBER_RE = re.compile(r'TKT-(\d+)')


def format_ticket_number(n: int) -> str:
    return f"TKT-{n:06d}"


def next_ticket_number(supabase) -> str:
    """Increment the newest ticket number; the first ticket is TKT-001000."""
    latest = fetch_one(
        supabase.table('support_tickets').select('ticket_number').order('created_at', desc=True)
    )
    n = FIRST_TICKET_NUMBER
    match = TICKET_NUMBER_RE.match((latest or {}).get('ticket_number') or '')
    if match:
        n = int(match.group(1)) + 1
    return format_ticket_number(n)


def _now():
    return datetime.now(timezone.utc).isoformat()


def _add_system_message(supabase, ticket_id, message):
    supabase.table('ticket_messages').insert({
        'ticket_id': ticket_id,
        'sender_type': 'system',
        'message': message,
        'is_internal_note': False,
    }).execute()


def _message_text(body):
    message = body.get('message')
    if not isinstance(message, str) or not message.strip():
        return None
    return message.strip()


# --------------------- User routes ---------------------
# Suspended accounts keep these routes to file and follow ban appeals
@support_bp.route('/api/support/tickets', methods=['GET'])
@require_auth(allow_banned=True)
def list_my_tickets():
    try:
        supabase = get_supabase()
        tickets = (supabase.table('support_tickets').select('*')
                   .eq('user_id', request.user_id)
                   .is_('deleted_at', 'null')
                   .order('created_at', desc=True).execute().data or [])

        for ticket in tickets:
            unread = (supabase.table('ticket_messages').select('id', count='exact')
                      .eq('ticket_id', ticket['id'])
                      .eq('read_by_user', False)
                      .eq('sender_type', 'admin')
                      .eq('is_internal_note', False).execute())
            ticket['unread_count'] = unread.count or 0

        return jsonify({'tickets': tickets}), 200
    except Exception:
        current_app.logger.exception("list_my_tickets error")
        return jsonify({'error': 'Internal server error'}), 500


@support_bp.route('/api/support/tickets', methods=['POST'])
@require_auth(allow_banned=True)
@limiter.limit("10 per hour")
def create_ticket():
    try:
        body = request.get_json(silent=True) or {}
        subject = body.get('subject')
        category = body.get('category')
        message = _message_text(body)
        if not subject or not category or not message:
            return jsonify({'error': 'Subject, category, and message are required'}), 400
        if category not in TICKET_CATEGORIES:
            return jsonify({'error': 'Invalid category'}), 400

        supabase = get_supabase()
        profile = request.profile
        ticket = first_row(supabase.table('support_tickets').insert({
            'ticket_number': next_ticket_number(supabase),
            'user_id': request.user_id,
            'user_email': profile.get('email'),
            'user_name': profile.get('full_name'),
            'subject': str(subject).strip(),
            'category': category,
            'status': 'open',
            # ban appeals come from suspended users and jump the queue
            'priority': 'urgent' if category == 'ban_appeal' else 'normal',
            'is_guest': False,
            'related_transaction_id': body.get('related_transaction_id') or None,
            'related_earn_position_id': body.get('related_earn_position_id') or None,
            'related_copy_position_id': body.get('related_copy_position_id') or None,
        }).execute())
        if not ticket:
            return jsonify({'error': 'Failed to create ticket'}), 500

        try:
            supabase.table('ticket_messages').insert({
                'ticket_id': ticket['id'],
                'sender_id': request.user_id,
                'sender_type': 'user',
                'sender_email': request.user_email,
                'message': message,
                'read_by_user': True,
                'read_by_admin': False,
                'is_internal_note': False,
            }).execute()
        except Exception:
            current_app.logger.exception("create_ticket message insert failed, removing ticket")
            supabase.table('support_tickets').delete().eq('id', ticket['id']).execute()
            return jsonify({'error': 'Failed to create ticket message'}), 500

        current_app.logger.info(f"Ticket {ticket['ticket_number']} created by {request.user_id} ({category})")
        return jsonify({
            'success': True,
            'ticket': {k: ticket.get(k) for k in (
                'id', 'ticket_number', 'subject', 'category', 'status', 'priority', 'created_at')},
        }), 201
    except Exception:
        current_app.logger.exception("create_ticket error")
        return jsonify({'error': 'Internal server error'}), 500


@support_bp.route('/api/support/tickets/<ticket_id>', methods=['GET'])
@require_auth(allow_banned=True)
def get_my_ticket(ticket_id):
    try:
        supabase = get_supabase()
        ticket = fetch_one(
            supabase.table('support_tickets').select('*')
            .eq('id', ticket_id).eq('user_id', request.user_id).is_('deleted_at', 'null')
        )
        if not ticket:
            return jsonify({'error': 'Ticket not found'}), 404

        # internal notes are staff-only
        messages = (supabase.table('ticket_messages').select('*')
                    .eq('ticket_id', ticket_id)
                    .eq('is_internal_note', False)
                    .order('created_at').execute().data or [])

        unread_ids = [m['id'] for m in messages if not m.get('read_by_user') and m.get('sender_type') == 'admin']
        if unread_ids:
            supabase.table('ticket_messages').update({'read_by_user': True, 'read_at': _now()}).in_('id', unread_ids).execute()

        return jsonify({'ticket': ticket, 'messages': messages}), 200
    except Exception:
        current_app.logger.exception("get_my_ticket error")
        return jsonify({'error': 'Internal server error'}), 500


@support_bp.route('/api/support/tickets/<ticket_id>/reply', methods=['POST'])
@require_auth(allow_banned=True)
@limiter.limit("30 per hour")
def reply_to_my_ticket(ticket_id):
    try:
        body = request.get_json(silent=True) or {}
        message = _message_text(body)
        if not message:
            return jsonify({'error': 'Message is required'}), 400

        supabase = get_supabase()
        ticket = fetch_one(
            supabase.table('support_tickets').select('*')
            .eq('id', ticket_id).eq('user_id', request.user_id).is_('deleted_at', 'null')
        )
        if not ticket:
            return jsonify({'error': 'Ticket not found'}), 404
        if ticket.get('status') == 'closed':
            return jsonify({'error': 'Cannot reply to a closed ticket. Please create a new ticket.'}), 400

        new_message = first_row(supabase.table('ticket_messages').insert({
            'ticket_id': ticket_id,
            'sender_id': request.user_id,
            'sender_type': 'user',
            'sender_email': request.user_email,
            'message': message,
            'read_by_user': True,
            'read_by_admin': False,
            'is_internal_note': False,
        }).execute())
        if not new_message:
            return jsonify({'error': 'Failed to send reply'}), 500

        update = {'updated_at': _now(), 'last_replied_by': 'user'}
        if ticket.get('status') == 'resolved':
            update['status'] = 'open'
            update['resolved_at'] = None
        try:
            supabase.table('support_tickets').update(update).eq('id', ticket_id).execute()
        except Exception as e:
            current_app.logger.error(f"Failed to update ticket {ticket_id} after reply: {e}")

        return jsonify({'success': True, 'message': new_message}), 200
    except Exception:
        current_app.logger.exception("reply_to_my_ticket error")
        return jsonify({'error': 'Internal server error'}), 500


@support_bp.route('/api/support/tickets/<ticket_id>/mark-read', methods=['POST'])
@require_auth(allow_banned=True)
def mark_ticket_read(ticket_id):
    try:
        supabase = get_supabase()
        ticket = fetch_one(
            supabase.table('support_tickets').select('id')
            .eq('id', ticket_id).eq('user_id', request.user_id).is_('deleted_at', 'null')
        )
        if not ticket:
            return jsonify({'error': 'Ticket not found'}), 404

        (supabase.table('ticket_messages')
         .update({'read_by_user': True, 'read_at': _now()})
         .eq('ticket_id', ticket_id)
         .eq('sender_type', 'admin')
         .eq('read_by_user', False).execute())
        return jsonify({'success': True}), 200
    except Exception:
        current_app.logger.exception("mark_ticket_read error")
        return jsonify({'error': 'Internal server error'}), 500


# --------------------- Admin routes ---------------------
@support_bp.route('/api/admin/support/tickets', methods=['GET'])
@require_admin
def admin_list_tickets():
    try:
        try:
            page = max(int(request.args.get('page', 1)), 1)
            limit = min(max(int(request.args.get('limit', 50)), 1), 100)
        except ValueError:
            page, limit = 1, 50
        offset = (page - 1) * limit

        supabase = get_supabase()
        query = supabase.table('support_tickets').select('*', count='exact')
        show_deleted = request.args.get('show_deleted') == 'true' and request.user_role == 'super_admin'
        if not show_deleted:
            query = query.is_('deleted_at', 'null')

        for field in ('status', 'category', 'priority'):
            value = request.args.get(field)
            if value and value != 'all':
                query = query.eq(field, value)

        assigned_to = request.args.get('assigned_to')
        if assigned_to == 'me':
            query = query.eq('assigned_to', request.user_id)
        elif assigned_to == 'unassigned':
            query = query.is_('assigned_to', 'null')
        elif assigned_to:
            query = query.eq('assigned_to', assigned_to)

        is_guest = request.args.get('is_guest')
        if is_guest in ('true', 'false'):
            query = query.eq('is_guest', is_guest == 'true')

        search = (request.args.get('search') or '').strip()
        if search:
            query = query.or_(
                f"ticket_number.ilike.%{search}%,user_email.ilike.%{search}%,subject.ilike.%{search}%"
            )

        res = query.order('updated_at', desc=True).range(offset, offset + limit - 1).execute()
        tickets = res.data or []
        for ticket in tickets:
            unread = (supabase.table('ticket_messages').select('id', count='exact')
                      .eq('ticket_id', ticket['id'])
                      .eq('read_by_admin', False)
                      .eq('is_internal_note', False).execute())
            ticket['unread_count'] = unread.count or 0

        total = res.count or 0
        return jsonify({
            'tickets': tickets,
            'pagination': {'page': page, 'limit': limit, 'total': total, 'pages': (total + limit - 1) // limit},
        }), 200
    except Exception:
        current_app.logger.exception("admin_list_tickets error")
        return jsonify({'error': 'Internal server error'}), 500


@support_bp.route('/api/admin/support/tickets/<ticket_id>', methods=['PATCH'])
@require_admin
def admin_update_ticket(ticket_id):
    try:
        body = request.get_json(silent=True) or {}
        action = body.get('action')
        status = body.get('status')
        priority = body.get('priority')
        category = body.get('category')

        supabase = get_supabase()
        ticket = fetch_one(supabase.table('support_tickets').select('*').eq('id', ticket_id))
        if not ticket:
            return jsonify({'error': 'Ticket not found'}), 404

        actor = request.profile.get('full_name') or request.user_email
        now = _now()
        update = {'updated_at': now}
        system_messages = []

        if action:
            if action == 'resolve':
                if ticket.get('status') in ('resolved', 'closed'):
                    return jsonify({'error': 'Ticket is already resolved or closed'}), 400
                update.update(status='resolved', resolved_at=now)
                system_messages.append(f"Ticket marked as resolved by {actor}")
            elif action == 'close':
                update.update(status='closed', closed_at=now)
                if not ticket.get('resolved_at'):
                    update['resolved_at'] = now
                system_messages.append(f"Ticket closed by {actor}")
            elif action == 'reopen':
                if ticket.get('status') in ('open', 'in_progress'):
                    return jsonify({'error': 'Ticket is already open'}), 400
                update.update(status='open', resolved_at=None, closed_at=None)
                system_messages.append(f"Ticket reopened by {actor}")
            elif action == 'in_progress':
                update['status'] = 'in_progress'
                system_messages.append(f"Ticket marked as in progress by {actor}")
            else:
                return jsonify({'error': 'Invalid action'}), 400
        elif status:
            if status not in TICKET_STATUSES:
                return jsonify({'error': 'Invalid status'}), 400
            update['status'] = status
            if status in ('resolved', 'closed') and not ticket.get('resolved_at'):
                update['resolved_at'] = now
            if status == 'closed':
                update['closed_at'] = now
            system_messages.append(f"Status changed to {status} by {actor}")

        if priority:
            if priority not in TICKET_PRIORITIES:
                return jsonify({'error': 'Invalid priority'}), 400
            if priority != ticket.get('priority'):
                update['priority'] = priority
                system_messages.append(f"Priority changed to {priority} by {actor}")

        if category:
            if category not in TICKET_CATEGORIES:
                return jsonify({'error': 'Invalid category'}), 400
            if category != ticket.get('category'):
                update['category'] = category
                system_messages.append(f"Category changed to {category} by {actor}")

        if 'assigned_to' in body:
            assignee = body['assigned_to']
            if assignee is None:
                update.update(assigned_to=None, assigned_at=None)
                system_messages.append(f"Ticket unassigned by {actor}")
            else:
                admin = fetch_one(supabase.table('profiles').select('id, email, full_name, role').eq('id', assignee))
                if not admin or admin.get('role') not in ('admin', 'super_admin'):
                    return jsonify({'error': 'Invalid admin user for assignment'}), 400
                update.update(assigned_to=assignee, assigned_at=now)
                system_messages.append(f"Ticket assigned to {admin.get('full_name') or admin.get('email')} by {actor}")

        updated = first_row(supabase.table('support_tickets').update(update).eq('id', ticket_id).execute())
        if not updated:
            return jsonify({'error': 'Failed to update ticket'}), 500

        for text in system_messages:
            _add_system_message(supabase, ticket_id, text)

        return jsonify({'success': True, 'ticket': updated}), 200
    except Exception:
        current_app.logger.exception("admin_update_ticket error")
        return jsonify({'error': 'Internal server error'}), 500


@support_bp.route('/api/admin/support/tickets/<ticket_id>/reply', methods=['POST'])
@require_admin
def admin_reply_to_ticket(ticket_id):
    try:
        body = request.get_json(silent=True) or {}
        message = _message_text(body)
        if not message:
            return jsonify({'error': 'Message is required'}), 400
        is_internal_note = bool(body.get('is_internal_note'))

        supabase = get_supabase()
        ticket = fetch_one(supabase.table('support_tickets').select('*').eq('id', ticket_id))
        if not ticket:
            return jsonify({'error': 'Ticket not found'}), 404
        if ticket.get('status') == 'closed' and not is_internal_note:
            return jsonify({'error': 'Cannot reply to a closed ticket'}), 400

        new_message = first_row(supabase.table('ticket_messages').insert({
            'ticket_id': ticket_id,
            'sender_id': request.user_id,
            'sender_type': 'admin',
            'sender_email': request.user_email,
            'message': message,
            'read_by_user': is_internal_note,
            'read_by_admin': True,
            'is_internal_note': is_internal_note,
        }).execute())
        if not new_message:
            return jsonify({'error': 'Failed to send reply'}), 500

        if not is_internal_note:
            update = {'updated_at': _now(), 'last_replied_by': 'admin'}
            if ticket.get('status') in ('resolved', 'pending', 'open'):
                update['status'] = 'in_progress'
            try:
                supabase.table('support_tickets').update(update).eq('id', ticket_id).execute()
            except Exception as e:
                current_app.logger.error(f"Failed to update ticket {ticket_id} after admin reply: {e}")

        return jsonify({'success': True, 'message': new_message}), 200
    except Exception:
        current_app.logger.exception("admin_reply_to_ticket error")
        return jsonify({'error': 'Internal server error'}), 500


@support_bp.route('/api/admin/support/tickets/<ticket_id>/note', methods=['POST'])
@require_admin
def admin_add_note(ticket_id):
    """Staff-only note; allowed on closed tickets and never shown to the user."""
    try:
        body = request.get_json(silent=True) or {}
        note = body.get('note')
        if not isinstance(note, str) or not note.strip():
            return jsonify({'error': 'Note is required'}), 400

        supabase = get_supabase()
        ticket = fetch_one(supabase.table('support_tickets').select('id, ticket_number').eq('id', ticket_id))
        if not ticket:
            return jsonify({'error': 'Ticket not found'}), 404

        new_note = first_row(supabase.table('ticket_messages').insert({
            'ticket_id': ticket_id,
            'sender_id': request.user_id,
            'sender_type': 'admin',
            'sender_email': request.user_email,
            'message': note.strip(),
            'is_internal_note': True,
            'read_by_admin': True,
            'read_by_user': False,
        }).execute())
        if not new_note:
            return jsonify({'error': 'Failed to create note'}), 500

        try:
            supabase.table('support_tickets').update({'updated_at': _now()}).eq('id', ticket_id).execute()
        except Exception as e:
            current_app.logger.error(f"Failed to touch ticket {ticket_id} after note: {e}")

        current_app.logger.info(f"Internal note added to {ticket['ticket_number']} by {request.user_id}")
        return jsonify({'success': True, 'note': new_note}), 200
    except Exception:
        current_app.logger.exception("admin_add_note error")
        return jsonify({'error': 'Internal server error'}), 500


def _count_by(tickets, field, keys):
    counts = {k: 0 for k in keys}
    for ticket in tickets:
        if ticket.get(field) in counts:
            counts[ticket[field]] += 1
    return counts


@support_bp.route('/api/admin/support/stats', methods=['GET'])
@require_admin
def admin_support_stats():
    try:
        supabase = get_supabase()
        tickets = (supabase.table('support_tickets')
                   .select('status, priority, category, assigned_to, is_guest, created_at')
                   .is_('deleted_at', 'null').execute().data or [])
        unread = (supabase.table('ticket_messages').select('id', count='exact')
                  .eq('read_by_admin', False)
                  .in_('sender_type', ['user', 'guest']).execute())

        now = datetime.now(timezone.utc)
        created = [parse_timestamp(t.get('created_at')) for t in tickets]
        assigned = [t['assigned_to'] for t in tickets if t.get('assigned_to')]

        assignment_counts = {}
        for admin_id in assigned:
            assignment_counts[admin_id] = assignment_counts.get(admin_id, 0) + 1
        top = sorted(assignment_counts.items(), key=lambda item: item[1], reverse=True)[:5]
        top_admins = [{'admin_id': admin_id, 'count': count} for admin_id, count in top]
        if top_admins:
            rows = (supabase.table('profiles').select('id, email, full_name')
                    .in_('id', [a['admin_id'] for a in top_admins]).execute().data or [])
            profiles = {p['id']: p for p in rows}
            for entry in top_admins:
                profile = profiles.get(entry['admin_id'])
                if profile:
                    entry.update(email=profile.get('email'), full_name=profile.get('full_name'))

        stats = {
            'total': len(tickets),
            'byStatus': _count_by(tickets, 'status', TICKET_STATUSES),
            'byPriority': _count_by(tickets, 'priority', TICKET_PRIORITIES),
            'byAssignment': {'assigned': len(assigned), 'unassigned': len(tickets) - len(assigned)},
            'byUserType': {
                'guest': len([t for t in tickets if t.get('is_guest')]),
                'authenticated': len([t for t in tickets if not t.get('is_guest')]),
            },
            'byCategory': _count_by(tickets, 'category', TICKET_CATEGORIES),
            'recentActivity': {
                'last24Hours': len([c for c in created if c and c >= now - timedelta(days=1)]),
                'last7Days': len([c for c in created if c and c >= now - timedelta(days=7)]),
            },
            'unreadMessages': unread.count or 0,
            'topAssignedAdmins': top_admins,
        }
        return jsonify({'stats': stats}), 200
    except Exception:
        current_app.logger.exception("admin_support_stats error")
        return jsonify({'error': 'Internal server error'}), 500
