from marshmallow import Schema, fields, validate, post_load, EXCLUDE, ValidationError

from ..models import TerrainType
from ..services.stats_service import TIME_RANGES
from ..utils.calculations import lbs_to_kg

TERRAIN_VALUES = [t.value for t in TerrainType]
WEIGHT_UNITS = ['kg', 'lb']
EXPORT_FORMATS = ['csv', 'json']


class StartSessionSchema(Schema):
    """Schema for validating a session start"""
    class Meta:
        unknown = EXCLUDE
    load_weight = fields.Float(required=True)
    body_weight = fields.Float(required=False, allow_none=True)
    # Unit for both weights; sessions are always stored in kg
    weight_unit = fields.Str(load_default='kg', validate=validate.OneOf(WEIGHT_UNITS))

    @post_load
    def to_kilograms(self, data, **kwargs):
        if data.pop('weight_unit') == 'lb':
            data['load_weight'] = lbs_to_kg(data['load_weight'])
            if data.get('body_weight') is not None:
                data['body_weight'] = lbs_to_kg(data['body_weight'])
        body_weight = data.get('body_weight')
        if body_weight is not None and not 20 <= body_weight <= 500:
            raise ValidationError('Must be between 20 and 500 kg.', 'body_weight')
        return data


class StopSessionSchema(Schema):
    """Schema for validating a session stop"""
    class Meta:
        unknown = EXCLUDE
    rpe = fields.Int(required=False, allow_none=True, validate=validate.Range(min=1, max=10))
    notes = fields.Str(required=False, allow_none=True, validate=validate.Length(max=2000))


class LocationBatchSchema(Schema):
    """Schema for a batch of samples (POST /api/rucks/<id>/location)"""
    class Meta:
        unknown = EXCLUDE
    # Per-sample validation happens in ingest
    points = fields.List(fields.Dict(), required=True, validate=validate.Length(min=1, max=1000))


class WeatherSnapshotSchema(Schema):
    """Schema for a client-supplied weather snapshot"""
    class Meta:
        unknown = EXCLUDE
    timestamp = fields.DateTime(required=True)
    temperature = fields.Float(required=True)
    humidity = fields.Float(load_default=50.0, validate=validate.Range(min=0, max=100))
    wind_speed = fields.Float(load_default=0.0, validate=validate.Range(min=0))
    wind_direction = fields.Float(load_default=0.0)
    precipitation = fields.Float(load_default=0.0, validate=validate.Range(min=0))
    pressure = fields.Float(load_default=1013.25)


class TerrainOverrideSchema(Schema):
    class Meta:
        unknown = EXCLUDE
    terrain_type = fields.Str(required=True, validate=validate.OneOf(TERRAIN_VALUES))


class HistoryQuerySchema(Schema):
    """Schema for history query string parameters"""
    class Meta:
        unknown = EXCLUDE
    after = fields.DateTime(required=False, allow_none=True)
    min_distance = fields.Float(load_default=0.0)
    min_weight = fields.Float(load_default=0.0)


class TrackExportQuerySchema(Schema):
    """Query string for GPX, CSV and JSON track exports"""
    class Meta:
        unknown = EXCLUDE
    # Douglas-Peucker tolerance in meters; omitted or 0 exports every committed point
    simplify = fields.Float(load_default=0.0, validate=validate.Range(min=0, max=1000))


class StatsQuerySchema(Schema):
    class Meta:
        unknown = EXCLUDE
    time_range = fields.Str(required=True, validate=validate.OneOf(TIME_RANGES))
