"""Configuration package"""

from .operator_config import OperatorConfig, load_operator_config, setup_logging
