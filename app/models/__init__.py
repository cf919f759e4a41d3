# Metadata registration for create_schema() and the test engine
from .golden_test import GoldenTest, GoldenTestRun
