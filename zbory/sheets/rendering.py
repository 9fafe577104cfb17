# zbory/sheets/rendering.py

import logging
from io import BytesIO
from typing import Dict, List, Optional, Sequence, Tuple

import qrcode
from PIL import Image, ImageDraw, ImageFont

logger = logging.getLogger(__name__)

# A4 at 150 dpi
PAGE_SIZE = (1240, 1754)
DPI = 150
MARGIN = 90
LINE_SPACING = 10
QR_BOX_SIZE = 4

CHOICE_LABELS = {'FOR': 'ЗА', 'AGAINST': 'ПРОТИ', None: '☐ ЗА   ☐ ПРОТИ'}
THRESHOLD_LABELS = {True: 'кваліфікована більшість (2/3)', False: 'проста більшість'}
PROTOCOL_TYPE_LABELS = {'ESTABLISHMENT': 'установчі збори', 'GENERAL': 'загальні збори'}

# tried in order after PDF_FONT_PATH; any of these covers Cyrillic
FONT_CANDIDATE_PATHS = (
    '/usr/share/fonts/truetype/dejavu/DejaVuSans.ttf',
    '/usr/share/fonts/dejavu/DejaVuSans.ttf',
    '/usr/share/fonts/TTF/DejaVuSans.ttf',
    '/usr/share/fonts/truetype/liberation/LiberationSans-Regular.ttf',
    '/System/Library/Fonts/Supplemental/Arial.ttf',
    '/System/Library/Fonts/Supplemental/Arial Unicode.ttf',
    'C:\\Windows\\Fonts\\arial.ttf',
)


class SheetRenderer:
    """Renders decision sheets as PDF using Pillow.

    All three renderings take a ballot snapshot: the dict built by
    zbory.voting.service.build_ballot_snapshot.
    """

    def __init__(self, font_path: Optional[str] = None, public_base_url: Optional[str] = None,
                 font_candidates: Sequence[str] = FONT_CANDIDATE_PATHS):
        self.font_path = None
        self.public_base_url = (public_base_url or '').rstrip('/')
        self.fonts = self._load_fonts([font_path] if font_path else [], font_candidates)

    def _load_fonts(self, configured: List[str], candidates: Sequence[str]) -> Dict[str, ImageFont.ImageFont]:
        sizes = {'title': 34, 'heading': 26, 'body': 22, 'small': 18}
        for path in configured + list(candidates):
            try:
                fonts = {name: ImageFont.truetype(path, size) for name, size in sizes.items()}
            except OSError:
                if path in configured:
                    logger.error("PDF font %s could not be loaded", path)
                continue
            self.font_path = path
            logger.info("PDF font: %s", path)
            return fonts
        logger.warning("No Unicode font found; PDF text is limited to latin-1. Set PDF_FONT_PATH")
        default = ImageFont.load_default()
        return {name: default for name in sizes}

    def _safe(self, text: str) -> str:
        if self.font_path:
            return text
        # the built-in bitmap font only covers latin-1
        return text.encode('latin-1', 'replace').decode('latin-1')

    def public_url(self, raw_token: str) -> str:
        return f"{self.public_base_url}/vote/{raw_token}"

    # --- public renderings ------------------------------------------------

    def render_original(self, snapshot: Dict, public_url: Optional[str] = None) -> bytes:
        """Blank ballot, with the public voting link as a QR code when known."""
        lines = self._header_lines(snapshot)
        for question in snapshot['questions']:
            lines += self._question_lines(question, choice_label=CHOICE_LABELS[None])
        lines += self._signature_lines(snapshot)
        return self._paint(lines, qr_data=public_url)

    def render_visualization(self, snapshot: Dict, tally: Optional[Dict] = None) -> bytes:
        """Owner's current choices plus the association-wide tally so far."""
        results = {}
        for result in (tally or {}).get('questions', []):
            results[result['questionId']] = result
        lines = self._header_lines(snapshot)
        lines.append(('small', f"Статус листка: {snapshot['status']}"))
        for question in snapshot['questions']:
            lines += self._question_lines(question, choice_label=CHOICE_LABELS[question.get('choice')])
            result = results.get(question['questionId'])
            if result:
                verdict = 'ПРИЙНЯТО' if result['passed'] else 'НЕ ПРИЙНЯТО'
                lines.append(('small', f"   Підсумок: за {result['forCount']}, проти {result['againstCount']}"
                                       f" з {result['totalCount']} - {verdict}"))
        return self._paint(lines)

    def render_decision(self, snapshot: Dict) -> bytes:
        """The finalized sheet that goes to both signers."""
        lines = self._header_lines(snapshot)
        for question in snapshot['questions']:
            lines += self._question_lines(question, choice_label=CHOICE_LABELS[question.get('choice')])
        if snapshot.get('closedAt'):
            lines.append(('small', f"Голосування завершено: {snapshot['closedAt']}"))
        lines += self._signature_lines(snapshot)
        return self._paint(lines)

    # --- layout -----------------------------------------------------------

    def _header_lines(self, snapshot: Dict) -> List[Tuple[str, str]]:
        osbb = snapshot['osbb']
        protocol = snapshot['protocol']
        owner = snapshot['owner']
        kind = PROTOCOL_TYPE_LABELS.get(protocol['type'], protocol['type'])
        lines = [
            ('title', "ЛИСТОК ПИСЬМОВОГО ОПИТУВАННЯ"),
            ('heading', osbb['name']),
            ('small', f"ЄДРПОУ {osbb['edrpou']}, {osbb['address']}"),
            ('body', f"Протокол №{protocol['number']} від {protocol['date']} ({kind})"),
            ('body', f"Співвласник: {owner['fullName']}, кв. {owner.get('apartmentNumber') or '—'}"),
            ('small', f"Листок дійсний до {snapshot['expiresAt']}"),
            ('body', ''),
        ]
        return lines

    def _question_lines(self, question: Dict, choice_label: str) -> List[Tuple[str, str]]:
        threshold = THRESHOLD_LABELS[bool(question['requiresTwoThirds'])]
        return [
            ('heading', f"{question['orderNumber']}. {question['text']}"),
            ('body', f"Пропозиція: {question['proposal']}"),
            ('small', f"Рішення приймається: {threshold}"),
            ('body', f"Голос: {choice_label}"),
            ('body', ''),
        ]

    def _signature_lines(self, snapshot: Dict) -> List[Tuple[str, str]]:
        organizer = snapshot['osbb'].get('organizerName') or 'Уповноважена особа'
        return [
            ('body', ''),
            ('body', f"Співвласник: {snapshot['owner']['fullName']} ____________"),
            ('body', f"Відповідальна особа: {organizer} ____________"),
        ]

    def _wrap(self, draw: ImageDraw.ImageDraw, text: str, font, width: int) -> List[str]:
        if not text:
            return ['']
        wrapped, current = [], ''
        for word in text.split():
            candidate = f"{current} {word}".strip()
            if draw.textlength(candidate, font=font) <= width or not current:
                current = candidate
            else:
                wrapped.append(current)
                current = word
        wrapped.append(current)
        return wrapped

    def _new_page(self):
        page = Image.new('RGB', PAGE_SIZE, 'white')
        return page, ImageDraw.Draw(page)

    def _paint(self, lines: List[Tuple[str, str]], qr_data: Optional[str] = None) -> bytes:
        width = PAGE_SIZE[0] - 2 * MARGIN
        bottom = PAGE_SIZE[1] - MARGIN
        page, draw = self._new_page()
        pages = [page]
        y = MARGIN

        if qr_data:
            qr = qrcode.QRCode(box_size=QR_BOX_SIZE, border=2)
            qr.add_data(qr_data)
            qr.make(fit=True)
            qr_img = qr.make_image(fill_color="black", back_color="white").get_image().convert('RGB')
            page.paste(qr_img, (PAGE_SIZE[0] - MARGIN - qr_img.width, MARGIN))
            width -= qr_img.width + 20

        for style, text in lines:
            font = self.fonts[style]
            line_height = font.getbbox('Hg')[3] + LINE_SPACING
            for chunk in self._wrap(draw, self._safe(text), font, width):
                if y + line_height > bottom:
                    page, draw = self._new_page()
                    pages.append(page)
                    y = MARGIN
                    width = PAGE_SIZE[0] - 2 * MARGIN
                draw.text((MARGIN, y), chunk, fill='black', font=font)
                y += line_height

        buffered = BytesIO()
        pages[0].save(buffered, format='PDF', save_all=True, append_images=pages[1:], resolution=DPI)
        return buffered.getvalue()
