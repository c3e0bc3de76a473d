import os
import sys

# Sphinx configuration for the AutoAlarm API reference.
# https://www.sphinx-doc.org/en/master/usage/configuration.html

project = 'autoalarm'
copyright = '2024, AutoAlarm contributors'
author = 'AutoAlarm contributors'

extensions = ['sphinx.ext.autodoc', 'sphinx_rtd_theme']
exclude_patterns = ['_build']

# The Lambda modules build without a Pulumi engine; the deployment modules need one at import time
autodoc_mock_imports = ['pulumi', 'pulumi_aws']
autodoc_member_order = 'bysource'
autodoc_default_options = {'members': True, 'show-inheritance': True}

html_theme = 'sphinx_rtd_theme'

sys.path.insert(0, os.path.abspath('..'))
