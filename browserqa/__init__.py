"""
browserqa - natural-language web tests executed by remote browser agents.

Runs plain-language test cases through interchangeable automation
providers, reduces agent output to a pass/fail verdict, keeps shared test
accounts exclusive across concurrent runs, and manages AI-suggested draft
tests from generation to publication.
"""

__version__ = "0.1.0"
__author__ = "browserqa team"
