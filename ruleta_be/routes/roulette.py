from flask import Blueprint, Response, request, jsonify, current_app, stream_with_context
from flask_jwt_extended import jwt_required, current_user
from datetime import datetime, time, timezone
from sqlalchemy import select, func

from ..models import db, RouletteMesa, RouletteDrawResult # Relative import
from ..schemas import ( # Relative import
    UserSchema, PlaceBetSchema, SubmitResultSchema, VoidMesaSchema, WinnersQuerySchema,
    ReportQuerySchema, RouletteMesaSchema
)
from ..exceptions import NotFoundException, MesaNotFoundException
from ..services.roulette_engine import get_roulette_engine
from ..utils.decorators import service_token_required, admin_required
from ..utils.roulette_helper import pot_distribution

roulette_bp = Blueprint('roulette', __name__, url_prefix='/api/roulette')

SSE_HEADERS = {
    'Cache-Control': 'no-cache',
    'X-Accel-Buffering': 'no',
}

def _event_stream(engine, subscription, heartbeat_seconds):
    """Yields SSE frames until the client goes away or the subscription is dropped"""
    try:
        yield 'retry: 3000\n\n'
        while not subscription.closed:
            event = subscription.get(timeout=heartbeat_seconds)
            if event is None:
                yield ': keep-alive\n\n'
                continue
            yield event.to_sse()
    finally:
        engine.unsubscribe(subscription)

def _sse_response(type_ids=None):
    engine = get_roulette_engine()
    subscription = engine.subscribe(type_ids)
    current_app.logger.info(f"SSE subscriber {subscription.id} connected for {subscription.mesa_types}")
    generator = _event_stream(engine, subscription, current_app.config.get('SSE_HEARTBEAT_SECONDS', 15))
    return Response(stream_with_context(generator), mimetype='text/event-stream', headers=SSE_HEADERS)

@roulette_bp.route('/types', methods=['GET'])
def list_types():
    engine = get_roulette_engine()
    types = []
    for mesa_type in engine.mesa_types.values():
        data = mesa_type.to_dict()
        data['potDistribution'] = pot_distribution(mesa_type)
        types.append(data)
    return jsonify({'status': True, 'types': types}), 200

@roulette_bp.route('/<mesa_type>/current', methods=['GET'])
def current_mesa(mesa_type):
    engine = get_roulette_engine()
    snapshot = engine.snapshot(mesa_type)
    if snapshot is None:
        raise MesaNotFoundException(status_message="No mesa is open for this type yet.")
    return jsonify({'status': True, 'type': mesa_type, 'mesa': snapshot}), 200

@roulette_bp.route('/<mesa_type>/bet', methods=['POST'])
@jwt_required()
def place_bet(mesa_type):
    data = PlaceBetSchema().load(request.get_json(silent=True) or {})
    engine = get_roulette_engine()
    user = current_user

    bet = engine.place_bet(
        mesa_type,
        user_id=user.id,
        sector_index=data['sector_index'],
        stake=data.get('stake'),
        mesa_id=data.get('mesa_id'),
        username=user.username,
    )

    # The reservation was committed by the balance service in its own session
    db.session.refresh(user)
    current_app.logger.info(f"User {user.id} placed roulette bet on sector {bet.sector_index} of {bet.mesa_id}")
    return jsonify({
        'status': True,
        'status_message': 'Bet placed successfully.',
        'bet': bet.to_dict(),
        'user': UserSchema().dump(user),
        'mesa': engine.snapshot(mesa_type),
    }), 201

@roulette_bp.route('/stream', methods=['GET'])
def stream_all():
    """Unified stream: one snapshot keyed by type, then events of every type"""
    return _sse_response()

@roulette_bp.route('/<mesa_type>/stream', methods=['GET'])
def stream_type(mesa_type):
    return _sse_response([mesa_type])

@roulette_bp.route('/<mesa_type>/result', methods=['POST'])
@service_token_required
def submit_result(mesa_type):
    """Result of the physical wheel for the spinning mesa. Accepted once."""
    data = SubmitResultSchema().load(request.get_json(silent=True) or {})
    engine = get_roulette_engine()
    outcome = engine.submit_external_result(
        mesa_type,
        data['mesa_id'],
        data['sector_index'],
        submitted_by=data.get('source'),
        signal_id=data.get('signal_id'),
    )
    current_app.logger.info(f"External result accepted for {data['mesa_id']}: sector {outcome.winning_sector_index}")
    return jsonify({
        'status': True,
        'status_message': 'Result accepted.',
        'mesaId': data['mesa_id'],
        'sectorIndex': outcome.winning_sector_index,
        'source': outcome.source_descriptor,
    }), 202

@roulette_bp.route('/<mesa_type>/void', methods=['POST'])
@admin_required
def void_mesa(mesa_type):
    data = VoidMesaSchema().load(request.get_json(silent=True) or {})
    engine = get_roulette_engine()
    refunded = engine.void_mesa(mesa_type, data['mesa_id'], reason=data['reason'])
    current_app.logger.warning(
        f"Admin {current_user.id} voided roulette mesa {data['mesa_id']} ({data['reason']}), {len(refunded)} bets refunded"
    )
    return jsonify({
        'status': True,
        'status_message': 'Mesa voided and bets refunded.',
        'mesaId': data['mesa_id'],
        'refundedBets': len(refunded),
        'mesa': engine.snapshot(mesa_type),
    }), 200

@roulette_bp.route('/<mesa_type>/winners', methods=['GET'])
def latest_winners(mesa_type):
    args = WinnersQuerySchema().load(request.args)
    engine = get_roulette_engine()
    engine.get_table(mesa_type)

    rows = db.session.execute(
        select(RouletteDrawResult)
        .join(RouletteMesa, RouletteMesa.mesa_id == RouletteDrawResult.mesa_id)
        .where(RouletteMesa.mesa_type == mesa_type)
        .order_by(RouletteDrawResult.drawn_at.desc())
        .limit(args['limit'])
    ).scalars().all()

    results = []
    for row in rows:
        winners = {'main': None, 'left': None, 'right': None}
        for payout in row.payouts or []:
            winners[payout['role']] = payout
        results.append({
            'mesaId': row.mesa_id,
            'winningSectorIndex': row.winning_sector_index,
            'winners': winners,
            'totalStaked': row.total_staked,
            'totalPaid': row.total_paid,
            'houseEarnings': row.house_earnings,
            'seed': row.seed,
            'source': row.source_descriptor,
            'drawnAt': row.drawn_at.isoformat() if row.drawn_at else None,
        })
    return jsonify({'status': True, 'type': mesa_type, 'results': results}), 200

@roulette_bp.route('/<mesa_type>/history/<mesa_id>', methods=['GET'])
def mesa_history(mesa_type, mesa_id):
    mesa = db.session.scalar(select(RouletteMesa).filter_by(mesa_id=mesa_id, mesa_type=mesa_type))
    if mesa is None:
        raise MesaNotFoundException(details={'mesaId': mesa_id})
    return jsonify({'status': True, 'mesa': RouletteMesaSchema().dump(mesa)}), 200

@roulette_bp.route('/<mesa_type>/report', methods=['GET'])
@admin_required
def earnings_report(mesa_type):
    """House earnings of settled rounds between two dates, both inclusive"""
    args = ReportQuerySchema().load(request.args)
    engine = get_roulette_engine()
    if mesa_type not in engine.mesa_types:
        raise NotFoundException(status_message=f"Unknown roulette type '{mesa_type}'.")

    start = datetime.combine(args['date_from'], time.min, tzinfo=timezone.utc)
    end = datetime.combine(args['date_to'], time.max, tzinfo=timezone.utc)

    rounds, staked, paid, earnings = db.session.execute(
        select(
            func.count(RouletteDrawResult.id),
            func.coalesce(func.sum(RouletteDrawResult.total_staked), 0),
            func.coalesce(func.sum(RouletteDrawResult.total_paid), 0),
            func.coalesce(func.sum(RouletteDrawResult.house_earnings), 0),
        )
        .join(RouletteMesa, RouletteMesa.mesa_id == RouletteDrawResult.mesa_id)
        .where(
            RouletteMesa.mesa_type == mesa_type,
            RouletteDrawResult.drawn_at >= start,
            RouletteDrawResult.drawn_at <= end,
        )
    ).one()

    voided = db.session.scalar(
        select(func.count(RouletteMesa.id)).where(
            RouletteMesa.mesa_type == mesa_type,
            RouletteMesa.voided.is_(True),
            RouletteMesa.settled_at >= start,
            RouletteMesa.settled_at <= end,
        )
    )

    return jsonify({
        'status': True,
        'type': mesa_type,
        'dateFrom': args['date_from'].isoformat(),
        'dateTo': args['date_to'].isoformat(),
        'rounds': rounds,
        'voidedRounds': voided or 0,
        'totalStaked': int(staked),
        'totalPaid': int(paid),
        'houseEarnings': int(earnings),
    }), 200
