# booking_engine/infrastructure/notifications/templates.py

from jinja2 import DictLoader, Environment, select_autoescape

BOOKING_CONFIRMATION = """\
<html>
<head>
  <style>
    body { font-family: Arial, sans-serif; line-height: 1.6; color: #333; }
    .container { max-width: 600px; margin: 0 auto; padding: 20px; }
    .header { background: #4b3f9e; color: white; padding: 20px; text-align: center; border-radius: 10px 10px 0 0; }
    .content { background: #f9f9f9; padding: 20px; border-radius: 0 0 10px 10px; }
    .ticket { background: white; border: 1px solid #ddd; padding: 15px; margin: 10px 0; border-radius: 8px; }
    .footer { text-align: center; margin-top: 20px; font-size: 12px; color: #666; }
  </style>
</head>
<body>
  <div class="container">
    <div class="header">
      <h1>Booking Confirmation</h1>
      <p>Your tickets are confirmed!</p>
    </div>
    <div class="content">
      <h2>Event Details</h2>
      <p><strong>Event:</strong> {{ event.title }}</p>
      <p><strong>Date:</strong> {{ event.starts_at.strftime("%B %d, %Y") }}</p>
      <p><strong>Time:</strong> {{ event.starts_at.strftime("%H:%M") }}</p>
      {% if event.venue_name %}<p><strong>Venue:</strong> {{ event.venue_name }}</p>{% endif %}
      <p><strong>Booking Reference:</strong> {{ booking.reference }}</p>

      <h2>Your Tickets</h2>
      {% for ticket in tickets %}
      <div class="ticket">
        <h3>Ticket: {{ ticket.number }}</h3>
        <p><strong>Category:</strong> {{ ticket.category }}</p>
        <p><strong>Price:</strong> {{ currency }} {{ "%.2f"|format(ticket.price) }}</p>
        {% if ticket.qr_url %}
        <div style="text-align: center; margin: 10px 0;">
          <img src="{{ ticket.qr_url }}" alt="QR Code" style="max-width: 200px; height: auto;"/>
        </div>
        {% else %}
        <p>Your QR code will be available in your account shortly.</p>
        {% endif %}
      </div>
      {% endfor %}

      <div class="footer">
        <p>Please bring a valid ID and show your QR code at the entrance.</p>
        <p>If you have any questions, please contact our support team.</p>
      </div>
    </div>
  </div>
</body>
</html>
"""

environment = Environment(
    loader=DictLoader({"booking_confirmation.html": BOOKING_CONFIRMATION}),
    autoescape=select_autoescape(default=True),
)


def render_booking_confirmation(booking, event, tickets: list[dict], currency: str) -> str:
    return environment.get_template("booking_confirmation.html").render(
        booking=booking,
        event=event,
        tickets=tickets,
        currency=currency,
    )
