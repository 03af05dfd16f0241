# src/prompts/common_prompts.py
"""
Fixed texts shown to the patient.

All content is in Simplified Chinese, the language of the interview.
"""

# ============================================================================
# CONVERSATION
# ============================================================================

# Seeded assistant turn at session start
GREETING = """您好，我是您的智能分诊助手。请简要描述您最主要的不舒服症状（例如：头痛、腹痛、发烧等）。"""

# Substituted when the model reply cannot be decoded
INTERVIEW_FALLBACK = """抱歉，我没有理解清楚。能否再详细描述一下您的症状？"""

# ============================================================================
# ERRORS
# ============================================================================

# Transport or provider failure during the interview
CHAT_ERROR = """抱歉，系统遇到错误，请稍后重试。"""

# Provider rate limit hit during the interview
RATE_LIMITED = """请求过于频繁，请稍等片刻后再试。"""

# Route-level failure of the analysis endpoint
ANALYSIS_ERROR = """分析失败，请重试。"""

# Hint attached to rate-limited analysis responses
RATE_LIMIT_HINT = """分析服务繁忙，请一分钟后再点击“更新分析”。"""

# ============================================================================
# EXPORT
# ============================================================================

# Export refused for a transcript that holds only the greeting
EXPORT_TOO_SHORT = """对话内容太少，无法保存"""

# Summary placeholders
UNKNOWN_COMPLAINT = """未知"""
PENDING_DIAGNOSIS = """待分析"""
