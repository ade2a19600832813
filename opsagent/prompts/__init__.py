from .loader import PromptNotFoundError, load_prompt
