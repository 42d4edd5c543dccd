"""
BongBong - 主Agent

负责回复群聊和私聊中的用户消息，并在群组空闲时发起闲聊。
"""
