from datetime import datetime, timezone

from flask_wtf import FlaskForm
from werkzeug.datastructures import MultiDict
from wtforms import Field, IntegerField, PasswordField, SelectField, StringField, TextAreaField
from wtforms.validators import (
    AnyOf,
    DataRequired,
    Email,
    Length,
    NumberRange,
    Optional,
    Regexp,
    StopValidation,
)

from models import (
    CURRENCIES,
    ITEM_TYPES,
    PROOF_TYPES,
    TRANSPORT_METHODS,
    UNITS,
    URGENCY_LEVELS,
    DeliveryStatus,
    Role,
)
from units import eth_to_gwei

ADDRESS_RE = r"^0x[0-9a-fA-F]{40}$"
PHONE_RE = r"^\+?[\d\s\-()]+$"
SIGNATURE_RE = r"^(0x)?[0-9a-fA-F]{130}$"


class Present:
    """Like InputRequired, but accepts falsy JSON values such as 0."""

    field_flags = {"required": True}

    def __init__(self, message=None):
        self.message = message

    def __call__(self, form, field):  # noqa: ANN001
        if field.raw_data and field.raw_data[0] not in (None, ""):
            return
        field.errors[:] = []
        raise StopValidation(self.message or field.gettext("This field is required."))


class JsonText:
    """Mixin for text fields: JSON numbers, booleans and objects are rejected."""

    def process_formdata(self, valuelist):  # noqa: ANN001
        if valuelist and not isinstance(valuelist[0], str):
            self.data = None
            raise ValueError(self.gettext("Not a valid string value."))
        super().process_formdata(valuelist)


class JsonStringField(JsonText, StringField):
    pass


class JsonTextAreaField(JsonText, TextAreaField):
    pass


class JsonPasswordField(JsonText, PasswordField):
    pass


class JsonIntegerField(IntegerField):
    def process_formdata(self, valuelist):  # noqa: ANN001
        if not valuelist or valuelist[0] in (None, ""):
            return
        value = valuelist[0]
        # 2.0 is accepted, 1.9 is not truncated to 1
        if isinstance(value, bool) or (isinstance(value, float) and not value.is_integer()):
            self.data = None
            raise ValueError(self.gettext("Not a valid integer value."))
        try:
            self.data = int(value)
        except (TypeError, ValueError):
            self.data = None
            raise ValueError(self.gettext("Not a valid integer value."))


class AmountField(Field):
    """Decimal ETH amount in the payload, integer gwei in ``data``."""

    def _value(self):
        return str(self.data) if self.data is not None else ""

    def process_formdata(self, valuelist):  # noqa: ANN001
        if not valuelist or valuelist[0] in (None, ""):
            return
        if isinstance(valuelist[0], (bool, dict)):
            raise ValueError("Not a valid amount.")
        try:
            self.data = eth_to_gwei(valuelist[0])
        except ValueError as e:
            self.data = None
            raise ValueError(str(e))


class IsoDateTimeField(Field):
    """ISO 8601 date or datetime, stored as naive UTC."""

    def process_formdata(self, valuelist):  # noqa: ANN001
        if not valuelist or valuelist[0] in (None, ""):
            return
        if not isinstance(valuelist[0], str):
            raise ValueError("Not a valid ISO 8601 date.")
        try:
            value = datetime.fromisoformat(valuelist[0].replace("Z", "+00:00"))
        except ValueError:
            self.data = None
            raise ValueError("Not a valid ISO 8601 date.")
        if value.tzinfo is not None:
            value = value.astimezone(timezone.utc).replace(tzinfo=None)
        self.data = value


class TagListField(Field):
    def process_formdata(self, valuelist):  # noqa: ANN001
        self.data = [str(v).strip() for v in valuelist if v is not None and str(v).strip()]


class JsonForm(FlaskForm):
    """Base for forms bound to a JSON body instead of request.form."""

    # Keys whose object value is merged into the top level
    flatten = ("delivery_location",)

    class Meta:
        csrf = False

    @classmethod
    def from_json(cls, payload: dict) -> "JsonForm":
        # null is treated as an absent key
        data = {k: v for k, v in payload.items() if v is not None and k not in cls.flatten}
        for key in cls.flatten:
            nested = payload.get(key)
            if isinstance(nested, dict):
                for name, value in nested.items():
                    if value is not None:
                        data.setdefault(name, value)
        return cls(formdata=MultiDict(data))

    def provided_data(self) -> dict:
        """Only the fields that were present in the payload."""
        return {name: field.data for name, field in self._fields.items() if field.raw_data}


class RegisterForm(JsonForm):
    name = JsonStringField("Name", validators=[DataRequired(), Length(max=120)])
    email = JsonStringField("Email", validators=[DataRequired(), Email(), Length(max=120)])
    password = JsonPasswordField("Password", validators=[DataRequired(), Length(min=6)])
    role = SelectField("Role", choices=[(r.value, r.value) for r in Role], validators=[DataRequired()])
    wallet_address = JsonStringField("Wallet address", validators=[Optional(), Regexp(ADDRESS_RE)])
    organization_name = JsonStringField("Organization", validators=[Optional(), Length(max=200)])


class LoginForm(JsonForm):
    email = JsonStringField("Email", validators=[DataRequired(), Email(), Length(max=120)])
    password = JsonPasswordField("Password", validators=[DataRequired()])


class ProfileForm(JsonForm):
    flatten = ("address",)

    name = JsonStringField("Name", validators=[Optional(), Length(min=2, max=100)])
    phone = JsonStringField("Phone", validators=[Optional(), Regexp(PHONE_RE), Length(max=30)])
    description = JsonTextAreaField("Description", validators=[Optional(), Length(max=500)])
    street = JsonStringField("Street", validators=[Optional(), Length(max=300)])
    city = JsonStringField("City", validators=[Optional(), Length(max=120)])
    state = JsonStringField("State", validators=[Optional(), Length(max=120)])
    country = JsonStringField("Country", validators=[Optional(), Length(max=120)])
    zip_code = JsonStringField("Zip code", validators=[Optional(), Length(max=20)])


class VerifyWalletForm(JsonForm):
    message = JsonStringField("Message", validators=[DataRequired(), Length(max=500)])
    signature = JsonStringField("Signature", validators=[DataRequired(), Regexp(SIGNATURE_RE)])


class AidPackageForm(JsonForm):
    title = JsonStringField("Title", validators=[DataRequired(), Length(min=5, max=200)])
    description = JsonTextAreaField("Description", validators=[DataRequired(), Length(min=10, max=1000)])
    item_type = JsonStringField("Item type", validators=[DataRequired(), AnyOf(ITEM_TYPES)])
    quantity = JsonIntegerField("Quantity", validators=[Present(), NumberRange(min=1)])
    unit = JsonStringField("Unit", validators=[DataRequired(), AnyOf(UNITS)])
    funding_goal = AmountField("Funding goal", validators=[Present(), NumberRange(min=0)])
    address = JsonStringField("Delivery address", validators=[DataRequired(), Length(min=5, max=300)])
    city = JsonStringField("City", validators=[DataRequired(), Length(min=2, max=120)])
    state = JsonStringField("State", validators=[Optional(), Length(max=120)])
    country = JsonStringField("Country", validators=[DataRequired(), Length(min=2, max=120)])
    zip_code = JsonStringField("Zip code", validators=[Optional(), Length(max=20)])
    expected_delivery_date = IsoDateTimeField("Expected delivery date", validators=[Present()])
    beneficiary_count = JsonIntegerField("Beneficiary count", validators=[Present(), NumberRange(min=1)])
    urgency_level = JsonStringField("Urgency", validators=[Optional(), AnyOf(URGENCY_LEVELS)])
    tags = TagListField("Tags")


class UpdateAidPackageForm(JsonForm):
    title = JsonStringField("Title", validators=[Optional(), Length(min=5, max=200)])
    description = JsonTextAreaField("Description", validators=[Optional(), Length(min=10, max=1000)])
    expected_delivery_date = IsoDateTimeField("Expected delivery date", validators=[Optional()])
    urgency_level = JsonStringField("Urgency", validators=[Optional(), AnyOf(URGENCY_LEVELS)])
    tags = TagListField("Tags")


class DonationForm(JsonForm):
    amount = AmountField("Amount", validators=[Present()])
    donor_address = JsonStringField("Donor address", validators=[DataRequired(), Regexp(ADDRESS_RE)])
    currency = JsonStringField("Currency", validators=[Optional(), AnyOf(CURRENCIES)])
    message = JsonTextAreaField("Message", validators=[Optional(), Length(max=500)])


class PledgeForm(JsonForm):
    volunteer_address = JsonStringField("Volunteer address", validators=[Optional(), Regexp(ADDRESS_RE)])
    transport_method = JsonStringField("Transport method", validators=[Optional(), AnyOf(TRANSPORT_METHODS)])
    estimated_delivery_time = IsoDateTimeField("Estimated delivery time", validators=[Optional()])
    notes = JsonTextAreaField("Notes", validators=[Optional(), Length(max=500)])


class StatusUpdateForm(JsonForm):
    status = JsonStringField(
        "Status",
        validators=[
            DataRequired(),
            AnyOf([DeliveryStatus.PICKED_UP.value, DeliveryStatus.IN_TRANSIT.value]),
        ],
    )


class ConfirmDeliveryForm(JsonForm):
    proof = JsonStringField("Delivery proof", validators=[DataRequired(), Length(max=500)])
    proof_type = JsonStringField("Proof type", validators=[Optional(), AnyOf(PROOF_TYPES)])
    otp = JsonStringField("Verification code", validators=[Optional(), Length(max=12)])


class FailDeliveryForm(JsonForm):
    reason = JsonTextAreaField("Reason", validators=[DataRequired(), Length(max=500)])
