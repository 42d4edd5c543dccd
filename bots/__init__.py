"""
Bots Package - Agent人设配置

本目录包含两个 Agent 的人设配置。每个 Agent 都有自己独特的：
- 人设 (Persona): 性格特点、说话规则（系统提示词）
- 提示词模板: 反击、展开、接话等场景
- AI配置: 模型选择、参数设置
- 空闲闲聊: 任务类型权重与开场白（仅主Agent）

目录结构：
bots/
├── bongbong_bot/     # 主Agent：回复用户、空闲闲聊、反击
│   ├── config.yaml
│   └── __init__.py
└── avatar_bot/       # 影子Agent：在主Agent之后接话
    ├── config.yaml
    └── __init__.py

调整人设步骤：
1. 修改对应目录下的 config.yaml
2. 如需更换目录，设置 PRIMARY_BOT_USERNAME / SHADOW_BOT_USERNAME
3. 重启 main.py

详细配置说明请参考现有的 config.yaml 文件。
"""
