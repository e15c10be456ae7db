"""Printable invoice document rendered from an HTML/CSS template with Jinja2.

The browser's print dialog turns the page into a PDF.
"""

from __future__ import annotations

from jinja2.sandbox import SandboxedEnvironment

from models import Invoice, PaymentStatus
from utils import money

_DEFAULT_CSS = """
body { font-family: DejaVu Sans, Arial, sans-serif; font-size: 10pt; margin: 20mm; }
h1 { font-size: 14pt; margin-bottom: 10px; }
h2 { font-size: 12pt; margin-top: 15px; }
table { width: 100%; border-collapse: collapse; margin-top: 10px; }
th, td { border: 1px solid #ccc; padding: 4px 8px; text-align: left; }
th { background: #f0f0f0; }
.info-table td { border: none; padding: 2px 8px; }
.total { font-size: 12pt; font-weight: bold; margin-top: 15px; }
.status { text-transform: uppercase; font-weight: bold; }
"""

_DEFAULT_INVOICE_HTML = """\
<h1>{{ company }} &ndash; Invoice {{ invoice.invoice_number or invoice.id }}</h1>
<table class="info-table">
  <tr><td><strong>Customer:</strong></td><td>{{ customer.name }}</td></tr>
  <tr><td><strong>Address:</strong></td><td>{{ subscription.address or '' }}</td></tr>
  <tr><td><strong>Business unit:</strong></td><td>{{ subscription.business_unit.name }}</td></tr>
  <tr><td><strong>Plan:</strong></td><td>{{ subscription.plan.name }}</td></tr>
  <tr><td><strong>Billing period:</strong></td>
      <td>{{ invoice.period_start.strftime('%b %d, %Y') }} &ndash; {{ invoice.period_end.strftime('%b %d, %Y') }}</td></tr>
  <tr><td><strong>Due date:</strong></td><td>{{ invoice.due_date.strftime('%b %d, %Y') }}</td></tr>
  <tr><td><strong>Status:</strong></td><td class="status">{{ invoice.payment_status.value }}</td></tr>
</table>
{% if invoice.notes %}<p>{{ invoice.notes }}</p>{% endif %}
<h2>Payments</h2>
<table>
  <thead><tr><th>Date</th><th>Mode</th><th>Reference</th><th>Amount</th></tr></thead>
  <tbody>
  {% for payment in payments %}
    <tr>
      <td>{{ payment.settlement_date.strftime('%b %d, %Y') }}</td>
      <td>{{ payment.mode }}</td>
      <td>{{ payment.reference or '' }}</td>
      <td>{{ '%.2f'|format(payment.amount) }} {{ currency }}</td>
    </tr>
  {% else %}
    <tr><td colspan="4">No payments yet</td></tr>
  {% endfor %}
  </tbody>
</table>
<p class="total">Amount due: {{ '%.2f'|format(invoice.amount_due) }} {{ currency }}</p>
<p class="total">Remaining: {{ '%.2f'|format(remaining) }} {{ currency }}</p>
"""


def render_invoice_html(invoice: Invoice, app_cfg, html_template: str | None = None, css: str | None = None) -> str:
    """Render *invoice* as a standalone HTML document."""
    subscription = invoice.subscription
    payments = [p for p in invoice.payments if p.status is PaymentStatus.APPROVED]
    paid = sum((money(p.amount) for p in payments), money(0))
    env = SandboxedEnvironment(autoescape=True)
    body = env.from_string(html_template or _DEFAULT_INVOICE_HTML).render(
        invoice=invoice,
        subscription=subscription,
        customer=subscription.customer,
        payments=payments,
        remaining=max(money(invoice.amount_due) - paid, money(0)),
        currency=app_cfg.currency,
        company=app_cfg.name,
    )
    return (
        "<!DOCTYPE html>\n<html><head><meta charset=\"utf-8\">"
        f"<style>{css or _DEFAULT_CSS}</style></head><body>{body}</body></html>"
    )
