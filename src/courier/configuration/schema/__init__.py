# SPDX-FileCopyrightText: 2020-present Dan Pascu <dan@aethereal.link>
#
# SPDX-License-Identifier: AGPL-3.0-or-later

from pathlib import Path

from lxml import etree

__all__ = 'RelaxNGValidator',  # noqa: COM818


type ETreeElement = etree._Element  # noqa: SLF001


class RelaxNGValidator:
    schema_directory = Path(__file__).parent

    def __init__(self, schema_file: str) -> None:
        self.schema_path = self.schema_directory / schema_file
        self.schema = etree.RelaxNG(file=self.schema_path)

    def __repr__(self) -> str:
        return f'{self.__class__.__qualname__}({self.schema_path.name!r})'

    def validate(self, element: ETreeElement) -> bool:
        return self.schema.validate(element)

    @property
    def last_error(self) -> str | None:
        error = self.schema.error_log.last_error
        return None if error is None else f'line {error.line}: {error.message}'
