"""Shared validation utilities"""

import re
import uuid
from typing import Optional


def validate_uuid(value: str) -> bool:
    """Validate UUID format"""
    try:
        uuid.UUID(value)
        return True
    except (ValueError, AttributeError, TypeError):
        return False


def validate_br_phone(phone: Optional[str]) -> Optional[str]:
    """
    Validate and normalize a Brazilian phone number to E.164 (+55DDXXXXXXXXX).

    Raises:
        ValueError: If phone number is invalid
    """
    if not phone:
        return phone

    digits = re.sub(r"\D", "", phone)
    if digits.startswith("55") and len(digits) in (12, 13):
        digits = digits[2:]

    # DDD + 8 digit landline or 9 digit mobile
    if len(digits) not in (10, 11):
        raise ValueError("Telefone deve ter DDD e 8 ou 9 dígitos")

    return f"+55{digits}"


def validate_cpf(cpf: Optional[str]) -> Optional[str]:
    """
    Validate a CPF by its check digits and return it as 11 digits.

    Raises:
        ValueError: If the CPF is malformed
    """
    if not cpf:
        return cpf

    digits = re.sub(r"\D", "", cpf)
    if len(digits) != 11 or digits == digits[0] * 11:
        raise ValueError("CPF inválido")

    for position in (9, 10):
        total = sum(int(digits[i]) * (position + 1 - i) for i in range(position))
        check = (total * 10) % 11 % 10
        if check != int(digits[position]):
            raise ValueError("CPF inválido")

    return digits
