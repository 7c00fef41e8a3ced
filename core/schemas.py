from marshmallow import Schema, fields, validate, EXCLUDE


class PositionReportSchema(Schema):
    """Body of POST /location sent by the LIFF tracker page."""
    user_id = fields.String(required=True, data_key="userId", validate=validate.Length(min=1, max=64))
    latitude = fields.Float(required=True, allow_nan=False, validate=validate.Range(min=-90, max=90))
    longitude = fields.Float(required=True, allow_nan=False, validate=validate.Range(min=-180, max=180))

    class Meta:
        unknown = EXCLUDE  # LIFF clients may attach accuracy/heading etc.


class DeliveryNoticeSchema(Schema):
    """Payload forwarded to the operational delivery webhook."""
    url = fields.String(required=True)
    filename = fields.String(required=True)
    category = fields.String(required=True)
    sent_at = fields.DateTime(required=True, data_key="sentAt")
