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
"""Tests for flag utils."""
from absl.testing import absltest
from absl.testing import parameterized

from shared_libs.flags import flag_utils


class FlagUtilsTest(parameterized.TestCase):

  @parameterized.parameters(['y', ' YES ', 't', 'tRue', 'on', '1'])
  def test_str_to_bool_true(self, val):
    self.assertTrue(flag_utils.str_to_bool(val))

  @parameterized.parameters(['n', 'no', 'f', 'FALSE', ' oFf ', '0'])
  def test_str_to_bool_false(self, val):
    self.assertFalse(flag_utils.str_to_bool(val))

  def test_str_to_bool_raises(self):
    with self.assertRaisesRegex(ValueError, 'invalid truth value'):
      flag_utils.str_to_bool('maybe')

  @parameterized.named_parameters([
      dict(testcase_name='none', val=None, expected=[]),
      dict(testcase_name='empty', val='', expected=[]),
      dict(
          testcase_name='origins',
          val=' http://localhost:5000, ,https://example.com ',
          expected=['http://localhost:5000', 'https://example.com'],
      ),
  ])
  def test_str_to_list(self, val, expected):
    self.assertEqual(flag_utils.str_to_list(val), expected)


if __name__ == '__main__':
  absltest.main()
