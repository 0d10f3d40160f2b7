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
"""Tests for deid_flags."""
import os

from absl import flags
from absl.testing import absltest
from absl.testing import flagsaver
import mock

from dicom_deidentifier import deid_errors
from dicom_deidentifier import deid_flags
from dicom_deidentifier import shared_test_util

# Mark flags as parsed to avoid UnparsedFlagAccessError when run under pytest.
flags.FLAGS.mark_as_parsed()


class DeidFlagsTest(absltest.TestCase):

  @flagsaver.flagsaver(
      project_id='test-prj',
      location='',
      dataset_id=None,
      storage_bucket_name='bucket',
  )
  def test_validate_required_config_reports_every_missing_value(self):
    with mock.patch.dict(os.environ, {'SERVICE_ACCOUNT': ''}):
      with self.assertRaises(deid_errors.MissingConfigError) as ctx:
        deid_flags.validate_required_config(
            deid_flags.SERVER_FLAGS, require_service_account=True
        )
    self.assertEqual(
        ctx.exception.missing, ['location', 'dataset_id', 'SERVICE_ACCOUNT']
    )
    self.assertEqual(ctx.exception.kind, deid_errors.ErrorKind.INVALID)

  @flagsaver.flagsaver(
      project_id='test-prj', location='us-central1', dataset_id='test-ds'
  )
  def test_validate_required_config_passes(self):
    deid_flags.validate_required_config(deid_flags.DATASET_FLAGS)

  @flagsaver.flagsaver(
      project_id='test-prj', location='us-central1', dataset_id='test-ds'
  )
  def test_dataset_path(self):
    self.assertEqual(deid_flags.dataset_path(), shared_test_util.DATASET)

  @flagsaver.flagsaver(project_id=None)
  def test_dataset_path_missing_config(self):
    with self.assertRaises(deid_errors.MissingConfigError):
      deid_flags.dataset_path()

  @flagsaver.flagsaver(
      deid_poll_interval_sec=2.5,
      deid_poll_max_attempts=10,
      deid_poll_timeout_sec=0.0,
  )
  def test_poll_policy(self):
    policy = deid_flags.poll_policy()
    self.assertEqual(policy.interval_sec, 2.5)
    self.assertEqual(policy.max_attempts, 10)
    self.assertEqual(policy.timeout_sec, 0.0)

  def test_default_poll_policy_has_deadline(self):
    self.assertGreater(deid_flags.DEID_POLL_TIMEOUT_SEC_FLG.default, 0)

  def test_service_account_path_read_at_call_time(self):
    with mock.patch.dict(os.environ, {'SERVICE_ACCOUNT': '/keys/a.json'}):
      self.assertEqual(deid_flags.service_account_path(), '/keys/a.json')
    with mock.patch.dict(os.environ, {'SERVICE_ACCOUNT': '/keys/b.json'}):
      self.assertEqual(deid_flags.service_account_path(), '/keys/b.json')


if __name__ == '__main__':
  absltest.main()
