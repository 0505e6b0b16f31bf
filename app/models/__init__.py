from app.models.carrier import CarrierCode
from app.models.order import Order, OrderState, PaymentMode, TERMINAL_STATES
