from marshmallow import Schema, fields, ValidationError, validates_schema
from marshmallow_sqlalchemy import SQLAlchemyAutoSchema, auto_field
from marshmallow.validate import Range, Length, Regexp
import re
import html

from .models import db, User, RouletteMesa, RouletteBet, RouletteDrawResult # Relative import

def sanitize_string_field(value):
    """Sanitize string inputs to prevent XSS"""
    if isinstance(value, str):
        # HTML escape
        value = html.escape(value)
        # Remove potential script tags
        value = re.sub(r'<script\b[^<]*(?:(?!<\/script>)<[^<]*)*<\/script>', '', value, flags=re.IGNORECASE)
    return value

# --- Custom Fields ---
class SanitizedString(fields.String):
    """String field with automatic sanitization"""
    def _deserialize(self, value, attr, data, **kwargs):
        value = super()._deserialize(value, attr, data, **kwargs)
        return sanitize_string_field(value) if value else value

MESA_ID_VALIDATOR = Regexp(r'^[A-Za-z0-9]+-\d{6,}$', error='Invalid mesa id.')

# --- User Schemas ---
class UserSchema(SQLAlchemyAutoSchema):
    class Meta:
        model = User
        sqla_session = db.session

    id = auto_field(dump_only=True)
    username = auto_field(dump_only=True)
    balance = auto_field(dump_only=True)
    is_admin = auto_field(dump_only=True)
    created_at = auto_field(dump_only=True)

# --- Roulette request schemas ---
class PlaceBetSchema(Schema):
    sector_index = fields.Int(required=True, strict=True, data_key='sectorIndex',
                              validate=Range(min=0, error="Sector index cannot be negative."))
    stake = fields.Int(strict=True, load_default=None, allow_none=True,
                       validate=Range(min=1, error="Stake must be positive."))
    mesa_id = fields.Str(load_default=None, allow_none=True, data_key='mesaId', validate=MESA_ID_VALIDATOR)

class SubmitResultSchema(Schema):
    """Physical wheel result posted by the trusted wheel service"""
    mesa_id = fields.Str(required=True, data_key='mesaId', validate=MESA_ID_VALIDATOR)
    sector_index = fields.Int(required=True, strict=True, data_key='sectorIndex', validate=Range(min=0))
    signal_id = SanitizedString(load_default=None, allow_none=True, data_key='signalId', validate=Length(max=128))
    source = SanitizedString(load_default=None, allow_none=True, validate=Length(max=40))

class VoidMesaSchema(Schema):
    mesa_id = fields.Str(required=True, data_key='mesaId', validate=MESA_ID_VALIDATOR)
    reason = SanitizedString(load_default='admin', validate=Length(min=1, max=30))

class WinnersQuerySchema(Schema):
    limit = fields.Int(load_default=10, validate=Range(min=1, max=100))

class ReportQuerySchema(Schema):
    date_from = fields.Date(required=True, data_key='dateFrom')
    date_to = fields.Date(required=True, data_key='dateTo')

    @validates_schema
    def validate_range(self, data, **kwargs):
        if data['date_from'] > data['date_to']:
            raise ValidationError('dateFrom must not be after dateTo.', field_name='dateFrom')

# --- Roulette history schemas ---
class RouletteBetSchema(SQLAlchemyAutoSchema):
    class Meta:
        model = RouletteBet
        sqla_session = db.session
        include_fk = True
        fields = ("user_id", "username", "sector_index", "stake", "prize", "placed_at")

class RouletteDrawResultSchema(SQLAlchemyAutoSchema):
    class Meta:
        model = RouletteDrawResult
        sqla_session = db.session
        include_fk = True
        exclude = ("id",)

class RouletteMesaSchema(SQLAlchemyAutoSchema):
    class Meta:
        model = RouletteMesa
        sqla_session = db.session
        exclude = ("id",)

    bets = fields.List(fields.Nested(RouletteBetSchema), dump_only=True)
    draw_result = fields.Nested(RouletteDrawResultSchema, dump_only=True, allow_none=True)
