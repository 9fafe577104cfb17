# tests/test_rendering.py
import pytest
from PIL import ImageFont

from zbory.sheets import rendering
from zbory.sheets.rendering import FONT_CANDIDATE_PATHS, SheetRenderer


@pytest.fixture
def snapshot():
    return {
        'sheetId': 's1',
        'status': 'CLOSED',
        'expiresAt': '2024-04-15T23:59:59.999000+00:00',
        'closedAt': '2024-03-10T12:00:00+00:00',
        'protocol': {'id': 'p1', 'number': '5', 'date': '2024-03-01', 'type': 'GENERAL'},
        'osbb': {'id': 'o1', 'name': 'OSBB Sunny House', 'shortName': 'Sunny House',
                 'address': 'Kyiv, Khreshchatyk 1', 'edrpou': '12345678', 'organizerName': 'Olena Kovalenko'},
        'owner': {'id': 'w1', 'fullName': 'Шевченко Тарас Григорович', 'shortName': 'Шевченко Т.Г.',
                  'apartmentNumber': '12'},
        'questions': [
            {'questionId': 'q1', 'orderNumber': 1, 'text': 'Elect the chair of the meeting',
             'proposal': 'Elect T. Shevchenko. ' * 40, 'requiresTwoThirds': False, 'choice': 'FOR'},
            {'questionId': 'q2', 'orderNumber': 2, 'text': 'Roof repair',
             'proposal': 'Repair the roof in 2025', 'requiresTwoThirds': True, 'choice': 'AGAINST'},
        ],
    }


@pytest.fixture
def renderer():
    return SheetRenderer(public_base_url='https://zbory.test/', font_candidates=())


def test_public_url(renderer):
    assert renderer.public_url('abc') == 'https://zbory.test/vote/abc'


def test_render_original_with_qr(renderer, snapshot):
    pdf = renderer.render_original(snapshot, public_url=renderer.public_url('t' * 64))
    assert pdf.startswith(b'%PDF')


def test_render_visualization(renderer, snapshot):
    tally = {'questions': [
        {'questionId': 'q1', 'orderNumber': 1, 'requiresTwoThirds': False,
         'forCount': 2, 'againstCount': 1, 'totalCount': 3, 'passed': True},
    ]}
    assert renderer.render_visualization(snapshot, tally).startswith(b'%PDF')
    assert renderer.render_visualization(snapshot).startswith(b'%PDF')


def test_render_decision_long_ballot(renderer, snapshot):
    snapshot['questions'] = snapshot['questions'] * 15
    pdf = renderer.render_decision(snapshot)
    assert pdf.startswith(b'%PDF')


def test_non_latin_text_without_font(renderer):
    assert renderer._safe('Так ЗА') == '??? ??'


def test_missing_font_falls_back(snapshot):
    renderer = SheetRenderer(font_path='/nonexistent/font.ttf', font_candidates=())
    assert renderer.font_path is None
    assert renderer.render_decision(snapshot).startswith(b'%PDF')


@pytest.fixture
def fake_fonts(monkeypatch):
    """Only paths in `installed` load; every attempt is recorded."""
    installed, attempts = set(), []
    loaded = ImageFont.load_default()

    def truetype(path, size):
        attempts.append(path)
        if path not in installed:
            raise OSError(f"cannot open resource {path}")
        return loaded

    monkeypatch.setattr(rendering.ImageFont, 'truetype', truetype)
    return installed, attempts


def test_unicode_font_found_among_candidates(fake_fonts, snapshot):
    installed, attempts = fake_fonts
    installed.add('/fonts/DejaVuSans.ttf')
    renderer = SheetRenderer(font_candidates=('/missing/Arial.ttf', '/fonts/DejaVuSans.ttf'))
    assert renderer.font_path == '/fonts/DejaVuSans.ttf'
    assert attempts[0] == '/missing/Arial.ttf'
    assert renderer._safe('Так ЗА') == 'Так ЗА'


def test_configured_font_is_tried_first(fake_fonts):
    installed, attempts = fake_fonts
    installed.update({'/etc/zbory/font.ttf', '/fonts/DejaVuSans.ttf'})
    renderer = SheetRenderer(font_path='/etc/zbory/font.ttf', font_candidates=('/fonts/DejaVuSans.ttf',))
    assert renderer.font_path == '/etc/zbory/font.ttf'
    assert '/fonts/DejaVuSans.ttf' not in attempts


def test_broken_configured_font_falls_through_to_candidates(fake_fonts):
    installed, _ = fake_fonts
    installed.add('/fonts/DejaVuSans.ttf')
    renderer = SheetRenderer(font_path='/nonexistent/font.ttf', font_candidates=('/fonts/DejaVuSans.ttf',))
    assert renderer.font_path == '/fonts/DejaVuSans.ttf'


def test_default_candidates_include_dejavu():
    assert '/usr/share/fonts/truetype/dejavu/DejaVuSans.ttf' in FONT_CANDIDATE_PATHS
