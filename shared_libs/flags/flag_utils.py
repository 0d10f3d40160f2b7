# Copyright 2023 Google LLC
#
# Licensed under the Apache License, Version 2.0 (the "License");
# you may not use this file except in compliance with the License.
# You may obtain a copy of the License at
#
#     http://www.apache.org/licenses/LICENSE-2.0
#
# Unless required by applicable law or agreed to in writing, software
# distributed under the License is distributed on an "AS IS" BASIS,
# WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
# See the License for the specific language governing permissions and
# limitations under the License.
# ==============================================================================
"""Conversions applied to env/secret values used as flag defaults."""
from typing import List, Optional

_TRUE_VALUES = frozenset(('y', 'yes', 't', 'true', 'on', '1'))
_FALSE_VALUES = frozenset(('n', 'no', 'f', 'false', 'off', '0'))


def str_to_bool(val: str) -> bool:
  """Converts a string representation of truth.

  Args:
    val: String to convert; case and surrounding whitespace are ignored.

  Returns:
    Boolean result

  Raises:
    ValueError: val is not a recognized truth value.
  """
  normalized = val.strip().lower()
  if normalized in _TRUE_VALUES:
    return True
  if normalized in _FALSE_VALUES:
    return False
  raise ValueError(f'invalid truth value {val!r}')


def str_to_list(val: Optional[str]) -> List[str]:
  """Splits comma separated value into a list of non-empty stripped values."""
  if not val:
    return []
  return [item.strip() for item in val.split(',') if item.strip()]
