"""
Avatar - 影子Agent

在主Agent回复后接话，偶尔对空闲闲聊做出反应。
"""
