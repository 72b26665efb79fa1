from flask_wtf import FlaskForm
from wtforms import (BooleanField, DateField, EmailField, FloatField, IntegerField, PasswordField,
                     SelectField, StringField, TextAreaField)
from wtforms.validators import DataRequired, Email, InputRequired, Length, NumberRange, Optional

from .models import ApplicationStatus, FeeType, ReservationStatus
from .reservations import STATUS_ALIASES

# JSON bodies carry real booleans, not checkbox strings
FALSE_VALUES = (False, 'false', 'False', '0', '')


def _enum_choices(enum_cls, extra=()):
    return [(member.value, member.value.replace('_', ' ').title()) for member in enum_cls] + list(extra)


class ApiForm(FlaskForm):
    """Form bound to the JSON request body; session-cookie API, so no CSRF token."""

    class Meta:
        csrf = False


class LoginForm(ApiForm):
    email = EmailField('Email', validators=[DataRequired(), Email(), Length(max=120)])
    password = PasswordField('Password', validators=[DataRequired()])


class BookForm(ApiForm):
    title = StringField('Title', validators=[DataRequired(), Length(max=300)])
    author = StringField('Author', validators=[DataRequired(), Length(max=200)])
    isbn = StringField('ISBN', validators=[Optional(), Length(max=20)])
    category = StringField('Category', validators=[Optional(), Length(max=100)])
    description = TextAreaField('Description', validators=[Optional()])
    total_copies = IntegerField('Total Copies', validators=[InputRequired(), NumberRange(min=1)])


class ReservationRequestForm(ApiForm):
    notes = TextAreaField('Notes', validators=[Optional(), Length(max=1000)])


class RejectReservationForm(ApiForm):
    notes = TextAreaField('Notes', validators=[Optional(), Length(max=1000)])


class ReservationStatusForm(ApiForm):
    status = SelectField('Status', validators=[DataRequired()],
                         choices=_enum_choices(ReservationStatus,
                                               [(alias, alias.title()) for alias in STATUS_ALIASES]))
    due_date = DateField('Due Date', format='%Y-%m-%d', validators=[Optional()])
    notes = TextAreaField('Notes', validators=[Optional(), Length(max=1000)])


class FeeForm(ApiForm):
    user_id = IntegerField('Member', validators=[InputRequired()])
    fee_type = SelectField('Fee Type', choices=_enum_choices(FeeType), validators=[DataRequired()])
    reason = StringField('Reason', validators=[DataRequired(), Length(max=300)])
    reservation_id = IntegerField('Reservation', validators=[Optional()])
    amount = FloatField('Amount', validators=[Optional(), NumberRange(min=0)])


class FeeStructureForm(ApiForm):
    fee_type = SelectField('Fee Type', choices=_enum_choices(FeeType), validators=[DataRequired()])
    name = StringField('Name', validators=[DataRequired(), Length(max=200)])
    description = TextAreaField('Description', validators=[Optional()])
    amount = FloatField('Amount', validators=[InputRequired(), NumberRange(min=0)])
    currency = StringField('Currency', validators=[Optional(), Length(min=3, max=3)])
    is_active = BooleanField('Active', false_values=FALSE_VALUES)


class FeeStructureUpdateForm(ApiForm):
    name = StringField('Name', validators=[Optional(), Length(max=200)])
    description = TextAreaField('Description', validators=[Optional()])
    amount = FloatField('Amount', validators=[Optional(), NumberRange(min=0)])
    currency = StringField('Currency', validators=[Optional(), Length(min=3, max=3)])
    is_active = BooleanField('Active', false_values=FALSE_VALUES)


class PaymentRequestForm(ApiForm):
    message = TextAreaField('Message', validators=[Optional(), Length(max=1000)])


class MembershipApplicationForm(ApiForm):
    first_name = StringField('First Name', validators=[DataRequired(), Length(max=100)])
    last_name = StringField('Last Name', validators=[DataRequired(), Length(max=100)])
    email = EmailField('Email', validators=[DataRequired(), Email(), Length(max=120)])
    phone = StringField('Phone', validators=[DataRequired(), Length(max=20)])
    address = TextAreaField('Address', validators=[DataRequired()])


class ApplicationReviewForm(ApiForm):
    status = SelectField('Status', choices=_enum_choices(ApplicationStatus), validators=[DataRequired()])
    review_notes = TextAreaField('Review Notes', validators=[Optional(), Length(max=2000)])
