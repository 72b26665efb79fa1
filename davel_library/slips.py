import io
from xml.sax.saxutils import escape

from reportlab.lib import colors
from reportlab.lib.pagesizes import letter
from reportlab.lib.styles import ParagraphStyle, getSampleStyleSheet
from reportlab.lib.units import inch
from reportlab.platypus import Paragraph, SimpleDocTemplate, Spacer, Table, TableStyle

from .models import FeeStatus, utcnow

STATUS_COLORS = {
    FeeStatus.PAID: colors.HexColor('#166534'),
    FeeStatus.PENDING: colors.HexColor('#92400e'),
    FeeStatus.OVERDUE: colors.HexColor('#991b1b'),
    FeeStatus.WAIVED: colors.HexColor('#1e40af'),
}


def slip_number(transaction):
    return f'FEE-{transaction.id:06d}'


def render_fee_slip(transaction, library_name='Davel Library'):
    """Render a printable fee payment slip and return the PDF bytes."""
    buffer = io.BytesIO()
    doc = SimpleDocTemplate(buffer, pagesize=letter,
                            topMargin=0.75 * inch, bottomMargin=0.75 * inch,
                            title=f'Fee Slip {slip_number(transaction)}')
    styles = getSampleStyleSheet()
    title_style = ParagraphStyle('LibraryName', parent=styles['Title'],
                                 textColor=colors.HexColor('#2563eb'))
    footer_style = ParagraphStyle('SlipFooter', parent=styles['Normal'],
                                  fontSize=8, textColor=colors.grey, alignment=1)

    user = transaction.user
    status = transaction.effective_status
    rows = [
        ['Slip Number', slip_number(transaction)],
        ['Date', utcnow().strftime('%Y-%m-%d')],
        ['Member Name', user.name],
        ['Email', user.email],
        ['Phone', user.phone or 'N/A'],
        ['Fee Type', transaction.fee_type.value.replace('_', ' ').title()],
        ['Reason', Paragraph(escape(transaction.reason), styles['Normal'])],
        ['Amount', f'{transaction.currency} {transaction.amount:.2f}'],
        ['Status', status.value],
        ['Due Date', transaction.due_date.strftime('%Y-%m-%d')],
    ]
    if transaction.paid_date:
        rows.append(['Paid Date', transaction.paid_date.strftime('%Y-%m-%d')])
    if transaction.reservation is not None:
        rows.append(['Book', Paragraph(escape(transaction.reservation.book.title), styles['Normal'])])

    table = Table(rows, colWidths=[1.8 * inch, 4.2 * inch])
    table.setStyle(TableStyle([
        ('FONTNAME', (0, 0), (0, -1), 'Helvetica-Bold'),
        ('BACKGROUND', (0, 0), (0, -1), colors.HexColor('#f8f9fa')),
        ('GRID', (0, 0), (-1, -1), 0.5, colors.lightgrey),
        ('VALIGN', (0, 0), (-1, -1), 'TOP'),
        ('TEXTCOLOR', (1, 8), (1, 8), STATUS_COLORS.get(status, colors.black)),
        ('FONTNAME', (1, 7), (1, 8), 'Helvetica-Bold'),
        ('TOPPADDING', (0, 0), (-1, -1), 6),
        ('BOTTOMPADDING', (0, 0), (-1, -1), 6),
    ]))

    elements = [
        Paragraph(escape(library_name), title_style),
        Paragraph('Fee Payment Slip', styles['Heading2']),
        Spacer(1, 0.25 * inch),
        table,
        Spacer(1, 0.5 * inch),
        Paragraph('Please present this slip at the front desk when settling the fee.', footer_style),
    ]
    doc.build(elements)
    return buffer.getvalue()
