# zbory/security/input_validator.py

import html
import re
from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from typing import Any, Dict, List, Optional

import bleach

from zbory.enums import ProtocolType, VoteChoice
from zbory.errors import ValidationError

# Structural validation of protocol, question, association, vote and login input.
# Validators never touch storage; every violation of one call is reported together.


@dataclass
class ValidationResult:
    value: Any = None
    errors: Dict[str, str] = field(default_factory=dict)

    @property
    def ok(self) -> bool:
        return not self.errors

    def raise_for_errors(self):
        if self.errors:
            raise ValidationError(self.errors)
        return self.value


def _pick(data: Dict, *keys, default=None):
    for key in keys:
        if key in data:
            return data[key]
    return default


class InputValidator:
    def __init__(self):
        self.patterns = {
            'email': re.compile(r'^[a-zA-Z0-9._%+-]+@[a-zA-Z0-9.-]+\.[a-zA-Z]{2,}$'),
            'phone': re.compile(r'^\+380[0-9]{9}$'),
            'code': re.compile(r'^[0-9]{4}$'),
            'edrpou': re.compile(r'^[0-9]{8}$'),
            'order_number': re.compile(r'^[0-9]+$'),
        }

    def clean_text(self, value) -> Optional[str]:
        if not isinstance(value, str):
            return None
        stripped = bleach.clean(value, tags=[], attributes={}, strip=True)
        return html.unescape(stripped).strip()

    def _check_length(self, errors, name, value, min_length, max_length):
        text = self.clean_text(value)
        if text is None:
            errors[name] = "Must be a string"
        elif len(text) < min_length:
            errors[name] = f"Must be at least {min_length} characters"
        elif len(text) > max_length:
            errors[name] = f"Must be at most {max_length} characters"
        return text

    def _parse_date(self, value) -> Optional[date]:
        if isinstance(value, datetime):
            if value.tzinfo is not None:
                value = value.astimezone(timezone.utc)
            return value.date()
        if isinstance(value, date):
            return value
        if not isinstance(value, str) or not value.strip():
            return None
        text = value.strip()
        try:
            return date.fromisoformat(text)
        except ValueError:
            pass
        try:
            parsed = datetime.fromisoformat(text.replace('Z', '+00:00'))
        except ValueError:
            return None
        return self._parse_date(parsed)

    # --- login -----------------------------------------------------------

    def normalize_phone(self, phone) -> str:
        return phone.strip() if isinstance(phone, str) else ''

    def validate_phone(self, phone) -> ValidationResult:
        normalized = self.normalize_phone(phone)
        if not self.patterns['phone'].match(normalized):
            return ValidationResult(errors={'phone': "Phone must look like +380XXXXXXXXX"})
        return ValidationResult(value=normalized)

    def validate_code(self, code) -> ValidationResult:
        normalized = code.strip() if isinstance(code, str) else ''
        if not self.patterns['code'].match(normalized):
            return ValidationResult(errors={'code': "Code must be exactly 4 digits"})
        return ValidationResult(value=normalized)

    def validate_email(self, email) -> bool:
        return isinstance(email, str) and bool(self.patterns['email'].match(email.strip()))

    # --- protocol & questions -------------------------------------------

    def validate_protocol(self, data: Dict) -> ValidationResult:
        if not isinstance(data, dict):
            return ValidationResult(errors={'protocol': "Must be an object"})
        errors = {}

        number = self._check_length(errors, 'number', _pick(data, 'number'), 1, 50)

        protocol_date = self._parse_date(_pick(data, 'date'))
        if protocol_date is None:
            errors['date'] = "Invalid date"

        raw_type = _pick(data, 'type')
        protocol_type = None
        try:
            protocol_type = raw_type if isinstance(raw_type, ProtocolType) else ProtocolType(raw_type)
        except ValueError:
            errors['type'] = "Must be ESTABLISHMENT or GENERAL"

        if errors:
            return ValidationResult(errors=errors)
        return ValidationResult(value={'number': number, 'date': protocol_date, 'type': protocol_type})

    def validate_question(self, data: Dict, prefix: str = '') -> ValidationResult:
        if not isinstance(data, dict):
            return ValidationResult(errors={prefix.rstrip('.') or 'question': "Must be an object"})
        errors = {}

        raw_order = _pick(data, 'order_number', 'orderNumber')
        order_number = None
        if isinstance(raw_order, bool):
            pass
        elif isinstance(raw_order, int):
            order_number = raw_order
        elif isinstance(raw_order, str) and self.patterns['order_number'].match(raw_order.strip()):
            order_number = int(raw_order.strip())
        if order_number is None or order_number < 1:
            errors[prefix + 'orderNumber'] = "Must be an integer >= 1"

        text = self._check_length(errors, prefix + 'text', _pick(data, 'text'), 10, 2000)
        proposal = self._check_length(errors, prefix + 'proposal', _pick(data, 'proposal'), 10, 5000)

        requires_two_thirds = _pick(data, 'requires_two_thirds', 'requiresTwoThirds')
        if not isinstance(requires_two_thirds, bool):
            errors[prefix + 'requiresTwoThirds'] = "Must be a boolean"

        if errors:
            return ValidationResult(errors=errors)
        return ValidationResult(value={
            'order_number': order_number,
            'text': text,
            'proposal': proposal,
            'requires_two_thirds': requires_two_thirds,
        })

    def validate_questions(self, items) -> ValidationResult:
        if not isinstance(items, list) or not items:
            return ValidationResult(errors={'questions': "At least one question is required"})
        errors = {}
        questions: List[Dict] = []
        seen = {}
        for index, item in enumerate(items):
            prefix = f'questions[{index}].'
            result = self.validate_question(item, prefix)
            errors.update(result.errors)
            if not result.ok:
                continue
            order_number = result.value['order_number']
            if order_number in seen:
                errors[prefix + 'orderNumber'] = f"Duplicates questions[{seen[order_number]}]"
            else:
                seen[order_number] = index
            questions.append(result.value)
        if errors:
            return ValidationResult(errors=errors)
        return ValidationResult(value=sorted(questions, key=lambda q: q['order_number']))

    # --- association ------------------------------------------------------

    def validate_osbb(self, data: Dict) -> ValidationResult:
        if not isinstance(data, dict):
            return ValidationResult(errors={'osbb': "Must be an object"})
        errors = {}
        name = self._check_length(errors, 'name', _pick(data, 'name'), 3, 200)
        short_name = self._check_length(errors, 'shortName', _pick(data, 'short_name', 'shortName'), 2, 80)
        address = self._check_length(errors, 'address', _pick(data, 'address'), 5, 300)
        organizer_name = self._check_length(
            errors, 'organizerName', _pick(data, 'organizer_name', 'organizerName'), 2, 200)

        edrpou = self.clean_text(_pick(data, 'edrpou')) or ''
        if not self.patterns['edrpou'].match(edrpou):
            errors['edrpou'] = "Must be exactly 8 digits"

        organizer_email = _pick(data, 'organizer_email', 'organizerEmail')
        if not self.validate_email(organizer_email):
            errors['organizerEmail'] = "Invalid email"

        organizer_phone = self.validate_phone(_pick(data, 'organizer_phone', 'organizerPhone'))
        if not organizer_phone.ok:
            errors['organizerPhone'] = organizer_phone.errors['phone']

        if errors:
            return ValidationResult(errors=errors)
        return ValidationResult(value={
            'name': name,
            'short_name': short_name,
            'address': address,
            'edrpou': edrpou,
            'organizer_name': organizer_name,
            'organizer_email': organizer_email.strip(),
            'organizer_phone': organizer_phone.value,
        })

    # --- vote submission --------------------------------------------------

    def validate_vote_submission(self, data: Dict) -> ValidationResult:
        if not isinstance(data, dict):
            return ValidationResult(errors={'submission': "Must be an object"})
        errors = {}

        # informed consent must be literally true
        if data.get('consent') is not True:
            errors['consent'] = "Consent is required"

        answers = data.get('answers')
        cleaned = []
        if not isinstance(answers, list) or not answers:
            errors['answers'] = "At least one answer is required"
        else:
            seen = set()
            for index, answer in enumerate(answers):
                prefix = f'answers[{index}].'
                if not isinstance(answer, dict):
                    errors[prefix.rstrip('.')] = "Must be an object"
                    continue
                question_id = _pick(answer, 'question_id', 'questionId')
                question_id = question_id.strip() if isinstance(question_id, str) else ''
                if not question_id:
                    errors[prefix + 'questionId'] = "Required"
                elif question_id in seen:
                    errors[prefix + 'questionId'] = "Question answered twice"
                seen.add(question_id)

                raw_choice = _pick(answer, 'choice', 'vote')
                try:
                    choice = raw_choice if isinstance(raw_choice, VoteChoice) else VoteChoice(raw_choice)
                except ValueError:
                    errors[prefix + 'vote'] = "Must be FOR or AGAINST"
                    continue
                cleaned.append({'question_id': question_id, 'choice': choice})

        if errors:
            return ValidationResult(errors=errors)
        return ValidationResult(value={'answers': cleaned, 'consent': True})
