"""Copy trading: follow a trader with a USDT allocation."""
from datetime import datetime, timezone

from flask import Blueprint, request, jsonify, current_app

from .audit import log_admin_action
from .auth import require_auth, require_super_admin, optional_auth, feature_required
from .db import get_supabase, fetch_one, first_row
from .extensions import limiter
from .wallet import get_usdt_token_id, get_available_balance, adjust_balance

copy_trade_bp = Blueprint('copy_trade', __name__)

TRADER_RISK_LEVELS = ('low', 'medium', 'high')


def trader_availability(trader: dict) -> dict:
    current = int(trader.get('current_copiers') or 0)
    maximum = int(trader.get('max_copiers') or 0)
    return {
        'isFull': current >= maximum,
        'fillPercentage': (current / maximum * 100) if maximum else 100.0,
        'remainingCapacity': max(maximum - current, 0),
    }


def calculate_payout(allocation: float, pnl: float, fee_percent: float) -> dict:
    """Settle a stopped position; the trader's fee is taken from profit only, never from losses."""
    profit = pnl if pnl > 0 else 0.0
    trader_fee = profit * (fee_percent / 100)
    user_profit_after_fee = profit - trader_fee
    return {
        'allocation': allocation,
        'pnl': pnl,
        'profit': profit,
        'trader_fee': trader_fee,
        'user_profit_after_fee': user_profit_after_fee,
        'total': allocation + user_profit_after_fee,
    }


def _record_transaction(supabase, user_id, token_id, tx_type, amount, metadata):
    try:
        supabase.table('transactions').insert({
            'user_id': user_id,
            'base_token_id': token_id,
            'type': tx_type,
            'coin_symbol': 'USDT',
            'amount': str(amount),
            'status': 'completed',
            'completed_at': datetime.now(timezone.utc).isoformat(),
            'metadata': metadata,
        }).execute()
    except Exception as e:
        current_app.logger.error(f"Failed to record {tx_type} transaction: {e}")


@copy_trade_bp.route('/api/copy-trade/traders', methods=['GET'])
@feature_required('copy-trade')
@optional_auth
def list_traders():
    try:
        supabase = get_supabase()
        traders = supabase.table('traders').select('*').order('aum_usdt', desc=True).execute().data or []

        copying = set()
        if request.user_id:
            rows = (supabase.table('user_copy_positions').select('trader_id')
                    .eq('user_id', request.user_id).eq('status', 'active').execute().data or [])
            copying = {r['trader_id'] for r in rows}

        result = [
            {**t, 'availability': trader_availability(t), 'isUserCopying': t['id'] in copying}
            for t in traders
        ]
        return jsonify({'success': True, 'traders': result}), 200
    except Exception:
        current_app.logger.exception("list_traders error")
        return jsonify({'error': 'Internal server error'}), 500


@copy_trade_bp.route('/api/copy-trade/positions', methods=['GET'])
@feature_required('copy-trade')
@require_auth
def list_copy_positions():
    try:
        supabase = get_supabase()
        positions = (supabase.table('user_copy_positions').select('*')
                     .eq('user_id', request.user_id)
                     .order('started_at', desc=True).execute().data or [])

        trader_ids = list({p['trader_id'] for p in positions})
        traders = {}
        if trader_ids:
            rows = supabase.table('traders').select('*').in_('id', trader_ids).execute().data or []
            traders = {t['id']: t for t in rows}
        for p in positions:
            p['trader'] = traders.get(p['trader_id'])

        active = [p for p in positions if p.get('status') == 'active']
        stopped = [p for p in positions if p.get('status') == 'stopped']
        liquidated = [p for p in positions if p.get('status') == 'liquidated']

        return jsonify({
            'success': True,
            'grouped': {'active': active, 'stopped': stopped, 'liquidated': liquidated},
            'summary': {
                'total_active_positions': len(active),
                'total_invested': sum(float(p.get('allocation_usdt') or 0) for p in active),
                'total_current_pnl': sum(float(p.get('current_pnl') or 0) for p in active),
                'total_lifetime_profit': sum(float(p.get('final_pnl') or 0) for p in stopped),
            },
        }), 200
    except Exception:
        current_app.logger.exception("list_copy_positions error")
        return jsonify({'error': 'Internal server error'}), 500


@copy_trade_bp.route('/api/copy-trade/start', methods=['POST'])
@feature_required('copy-trade')
@require_auth
@limiter.limit("20 per minute")
def start_copy_trade():
    try:
        body = request.get_json(silent=True) or {}
        trader_id = body.get('traderId')
        amount = body.get('amount')
        if not trader_id or not amount:
            return jsonify({'error': 'Missing trader ID or amount'}), 400
        try:
            allocation = float(amount)
        except (TypeError, ValueError):
            allocation = 0
        if allocation <= 0:
            return jsonify({'error': 'Invalid allocation amount'}), 400

        supabase = get_supabase()
        user_id = request.user_id

        trader = fetch_one(supabase.table('traders').select('*').eq('id', trader_id))
        if not trader:
            return jsonify({'error': 'Trader not found'}), 404
        current_copiers = int(trader.get('current_copiers') or 0)
        if current_copiers >= int(trader.get('max_copiers') or 0):
            return jsonify({'error': 'Trader capacity is full'}), 400

        existing = fetch_one(
            supabase.table('user_copy_positions').select('id')
            .eq('user_id', user_id).eq('trader_id', trader_id).eq('status', 'active')
        )
        if existing:
            return jsonify({'error': 'You are already copying this trader'}), 400

        usdt_id = get_usdt_token_id(supabase)
        if not usdt_id:
            return jsonify({'error': 'USDT token not configured'}), 500

        balance = get_available_balance(supabase, user_id, usdt_id)
        if balance['available_balance'] < allocation:
            return jsonify({
                'error': 'Insufficient available USDT balance',
                'available': balance['available_balance'],
                'requested': allocation,
                'locked': balance['locked_balance'],
            }), 400

        adjust_balance(supabase, user_id, usdt_id, allocation, 'debit')

        try:
            position = first_row(supabase.table('user_copy_positions').insert({
                'user_id': user_id,
                'trader_id': trader_id,
                'allocation_usdt': allocation,
                'current_pnl': 0,
                'status': 'active',
                'started_at': datetime.now(timezone.utc).isoformat(),
            }).execute())
            if not position:
                raise RuntimeError("position insert returned no row")
        except Exception:
            current_app.logger.exception("Failed to create copy position, refunding")
            adjust_balance(supabase, user_id, usdt_id, allocation, 'credit')
            return jsonify({'error': 'Failed to create copy position'}), 500

        try:
            supabase.table('traders').update({
                'current_copiers': current_copiers + 1,
                'aum_usdt': float(trader.get('aum_usdt') or 0) + allocation,
            }).eq('id', trader_id).execute()
        except Exception as e:
            current_app.logger.error(f"Failed to update trader stats: {e}")

        _record_transaction(supabase, user_id, usdt_id, 'copy_trade_start', allocation, {
            'trader_id': trader_id,
            'trader_name': trader.get('name'),
            'position_id': position['id'],
            'allocation': allocation,
        })

        return jsonify({
            'success': True,
            'position': {**position, 'trader': trader},
            'message': f"Successfully started copying {trader.get('name')} with {allocation} USDT",
        }), 200
    except Exception:
        current_app.logger.exception("start_copy_trade error")
        return jsonify({'error': 'Internal server error'}), 500


@copy_trade_bp.route('/api/copy-trade/stop', methods=['POST'])
@feature_required('copy-trade')
@require_auth
@limiter.limit("20 per minute")
def stop_copy_trade():
    try:
        body = request.get_json(silent=True) or {}
        position_id = body.get('positionId')
        if not position_id:
            return jsonify({'error': 'Missing position ID'}), 400

        supabase = get_supabase()
        user_id = request.user_id

        position = fetch_one(
            supabase.table('user_copy_positions').select('*').eq('id', position_id).eq('user_id', user_id)
        )
        if not position:
            return jsonify({'error': 'Position not found'}), 404
        if position.get('status') != 'active':
            return jsonify({'error': 'Position is not active'}), 400

        trader = fetch_one(supabase.table('traders').select('*').eq('id', position['trader_id']))
        if not trader:
            return jsonify({'error': 'Trader not found'}), 404

        usdt_id = get_usdt_token_id(supabase)
        if not usdt_id:
            return jsonify({'error': 'USDT token not configured'}), 500

        payout = calculate_payout(
            float(position.get('allocation_usdt') or 0),
            float(position.get('current_pnl') or 0),
            float(trader.get('performance_fee_percent') or 0),
        )

        adjust_balance(supabase, user_id, usdt_id, payout['total'], 'credit')

        try:
            supabase.table('user_copy_positions').update({
                'status': 'stopped',
                'stopped_at': datetime.now(timezone.utc).isoformat(),
                'final_pnl': payout['user_profit_after_fee'],
                'performance_fee_paid': payout['trader_fee'],
            }).eq('id', position_id).execute()
        except Exception:
            current_app.logger.exception("Failed to stop position, reversing credit")
            adjust_balance(supabase, user_id, usdt_id, payout['total'], 'debit')
            return jsonify({'error': 'Failed to stop position'}), 500

        try:
            supabase.table('traders').update({
                'current_copiers': max(0, int(trader.get('current_copiers') or 0) - 1),
                'aum_usdt': max(0.0, float(trader.get('aum_usdt') or 0) - payout['allocation']),
                'lifetime_earnings_usdt': float(trader.get('lifetime_earnings_usdt') or 0) + payout['trader_fee'],
            }).eq('id', trader['id']).execute()
        except Exception as e:
            current_app.logger.error(f"Failed to update trader stats: {e}")

        _record_transaction(supabase, user_id, usdt_id, 'copy_trade_stop', payout['total'], {
            'position_id': position_id,
            'trader_id': trader['id'],
            'trader_name': trader.get('name'),
            **payout,
        })

        new_balance = get_available_balance(supabase, user_id, usdt_id)['balance']
        return jsonify({
            'success': True,
            'payout': payout,
            'new_balance': new_balance,
            'message': f"Successfully stopped copying {trader.get('name')}. Received {payout['total']:.2f} USDT",
        }), 200
    except Exception:
        current_app.logger.exception("stop_copy_trade error")
        return jsonify({'error': 'Internal server error'}), 500


# --------------------- Admin ---------------------
@copy_trade_bp.route('/api/admin/copy-trade/traders', methods=['POST'])
@require_super_admin
def admin_create_trader():
    try:
        body = request.get_json(silent=True) or {}
        if not body.get('name') or not body.get('strategy') or not body.get('risk_level'):
            return jsonify({'error': 'Name, strategy, and risk level are required'}), 400
        if body['risk_level'] not in TRADER_RISK_LEVELS:
            return jsonify({'error': 'Risk level must be low, medium, or high'}), 400

        trader = first_row(get_supabase().table('traders').insert({
            'name': body['name'],
            'avatar_url': body.get('avatar_url') or None,
            'strategy': body['strategy'],
            'risk_level': body['risk_level'],
            'aum_usdt': body.get('aum_usdt') or 0,
            'current_copiers': 0,
            'max_copiers': body.get('max_copiers') or 100,
            'performance_fee_percent': body.get('performance_fee_percent') or 15,
            'lifetime_earnings_usdt': 0,
            'historical_roi_min': body.get('historical_roi_min') or 0,
            'historical_roi_max': body.get('historical_roi_max') or 0,
            'stats': body.get('stats') or {},
        }).execute())
        if not trader:
            return jsonify({'error': 'Failed to create trader'}), 500

        log_admin_action('trader_created', None, {'trader_id': trader.get('id'), 'name': trader.get('name')})
        return jsonify({'success': True, 'trader': trader}), 201
    except Exception:
        current_app.logger.exception("admin_create_trader error")
        return jsonify({'error': 'Internal server error'}), 500


@copy_trade_bp.route('/api/admin/copy-trade/traders/<trader_id>', methods=['DELETE'])
@require_super_admin
def admin_delete_trader(trader_id):
    try:
        supabase = get_supabase()
        active = fetch_one(
            supabase.table('user_copy_positions').select('id').eq('trader_id', trader_id).eq('status', 'active')
        )
        if active:
            return jsonify({
                'error': 'Cannot delete trader with active copy positions. Please close all positions first.',
            }), 409

        supabase.table('traders').delete().eq('id', trader_id).execute()
        log_admin_action('trader_deleted', None, {'trader_id': trader_id})
        return jsonify({'success': True}), 200
    except Exception:
        current_app.logger.exception("admin_delete_trader error")
        return jsonify({'error': 'Internal server error'}), 500
