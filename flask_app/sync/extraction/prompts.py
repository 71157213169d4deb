"""Prompt templates and output schemas for free-text field extraction."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Mapping, Tuple


@dataclass(frozen=True)
class PromptSpec:
    name: str
    template: str
    schema: Mapping[str, Any]
    output_fields: Tuple[str, ...]

    def render(self, raw_input: str) -> str:
        return self.template.format(raw_input=raw_input)


FULL_NAME = PromptSpec(
    name="extract_full_name",
    template=(
        "A user provided us with unstructured data for their first and last name. We need to break it "
        "into first_name and last_name parts to use in our email list system.\n"
        "\n"
        "1. Break the provided info into first_name and last_name parts. The first name should be something "
        'that would fit nicely into the following template: "Hi firstName!"\n'
        "\n"
        '2. Transform the parts into "nice" data. For example, transform "ZACH latta" into first_name: '
        '"Zach", last_name: "Latta"\n'
        "\n"
        "3. If the user has a preferred name, use that because they are the recipient of the emails we're "
        "sending and we want to respect their preferences\n"
        "\n"
        "4. Ensure that first_name + last_name contains the full name the user provided us (ex. some last "
        "names have multiple words in them)\n"
        "\n"
        "User provided info:\n"
        "\n"
        "{raw_input}\n"
    ),
    schema={
        "type": "object",
        "properties": {
            "firstName": {"type": "string", "description": "The person's first name"},
            "lastName": {"type": "string", "description": "The person's last name"},
        },
        "required": ["firstName", "lastName"],
    },
    output_fields=("firstName", "lastName"),
)

FULL_ADDRESS = PromptSpec(
    name="extract_full_address",
    template=(
        "A user provided us with unstructured data for their mailing address. We need to break it into "
        "addressLine1, addressLine2 (optional), addressCity, addressState, addressZipCode, and "
        "addressCountry parts\n"
        "\n"
        "1. Break the provided info into parts.\n"
        "\n"
        "2. Strip unnecessary punctuation\n"
        "\n"
        "3. Ensure that the parts, when combined, contain all of the user-provided text. Some countries have "
        "complicated address systems, and parts of address text that seem insignificant are crucial for "
        "mail to be delivered.\n"
        "\n"
        "4. Do not invent anything in your returned address (ex. if the user didn't specify a country, don't "
        "list a country, and so on)\n"
        "\n"
        "5. There is a maximum of 30 characters per part.\n"
        "\n"
        "User provided info:\n"
        "\n"
        "{raw_input}\n"
    ),
    schema={
        "type": "object",
        "properties": {
            "addressLine1": {"type": "string", "description": "Street address line 1"},
            "addressLine2": {"type": "string", "description": "Street address line 2 (optional)"},
            "addressCity": {"type": "string", "description": "City name"},
            "addressState": {"type": "string", "description": "State or province code"},
            "addressZipCode": {"type": "string", "description": "ZIP or postal code"},
            "addressCountry": {"type": "string", "description": "Country code or name"},
        },
        "required": ["addressLine1", "addressCity", "addressState", "addressZipCode", "addressCountry"],
    },
    output_fields=(
        "addressLine1",
        "addressLine2",
        "addressCity",
        "addressState",
        "addressZipCode",
        "addressCountry",
    ),
)

__all__ = ["FULL_ADDRESS", "FULL_NAME", "PromptSpec"]
