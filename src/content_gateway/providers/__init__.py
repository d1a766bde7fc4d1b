from .content_generator_interface import ContentGenerator
from .dingtalk_content_generator import DingtalkContentGenerator
from .openai_content_generator import OpenAIContentGenerator

__all__ = ["ContentGenerator", "DingtalkContentGenerator", "OpenAIContentGenerator"]
